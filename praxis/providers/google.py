import base64
import json
import os
from typing import Any, Dict, List, Optional

import httpx

from praxis import config
from praxis.speech_text import sanitize_for_speech

from .base import ChatClient, ProviderError, SpeechClient, SynthesizedAudio

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_CHAT_MODEL = "gemini-2.5-flash"

logger = config.configure_logger("praxis.ai.google")


def _bare_model_id(model: str) -> str:
    model = (model or "").strip()
    return model[len("models/"):] if model.startswith("models/") else model


def _candidate_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return ""
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return " ".join(str(p.get("text")) for p in parts if isinstance(p, dict) and p.get("text")).strip()


class GoogleChatClient(ChatClient):
    provider_name: str = "google"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=_bare_model_id(model or os.getenv("GEMINI_MODEL") or DEFAULT_CHAT_MODEL))
        api_key = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is required for Google provider")
        self._api_key = api_key
        self.fallback_model = _bare_model_id(os.getenv("GEMINI_FALLBACK_MODEL", "gemini-2.0-flash")) or None

    async def generate(
        self,
        contents: List[Dict[str, Any]],
        system: Optional[str] = None,
        max_tokens: int = 512,
        request_id: Optional[str] = None,
    ) -> str:
        """Single generateContent call.

        Endpoint: POST {base}/models/{model}:generateContent?key=API_KEY
        A 404 (model id retired or unknown) is retried once with GEMINI_FALLBACK_MODEL.
        """
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": 0.4, "maxOutputTokens": max_tokens},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        headers = {"Content-Type": "application/json"}
        if request_id:
            headers["X-Request-Id"] = request_id

        timeout_s = config._env_float("AI_HTTP_TIMEOUT_SECONDS", 30.0)
        models = [self.model]
        if self.fallback_model and self.fallback_model != self.model:
            models.append(self.fallback_model)

        async with httpx.AsyncClient(timeout=timeout_s) as client:
            for idx, model in enumerate(models):
                url = f"{GEMINI_BASE_URL}/models/{model}:generateContent?key={self._api_key}"
                try:
                    r = await client.post(url, headers=headers, json=payload)
                except httpx.HTTPError as e:
                    logger.error(json.dumps({
                        "event": "gemini_transport_error",
                        "error": type(e).__name__,
                        "message": str(e)[:256],
                        "model": model,
                        "requestId": request_id,
                    }))
                    raise ProviderError(f"Gemini request failed: {type(e).__name__}") from e
                if r.status_code == 404 and idx + 1 < len(models):
                    logger.warning(json.dumps({
                        "event": "gemini_model_unavailable",
                        "model": model,
                        "fallback": models[idx + 1],
                        "requestId": request_id,
                    }))
                    continue
                if r.status_code >= 400:
                    logger.error(json.dumps({
                        "event": "gemini_http_error",
                        "status": r.status_code,
                        "body": (r.text or "")[:1024],
                        "model": model,
                        "requestId": request_id,
                    }))
                    raise ProviderError(f"Gemini API error: {r.status_code}")
                try:
                    data = r.json()
                except Exception as e:
                    raise ProviderError("Gemini returned a non-JSON body") from e
                return _candidate_text(data) or "(no response text)"
        raise ProviderError("Gemini API error: no model available")


class GoogleSpeechClient(SpeechClient):
    """Google Cloud Text-to-Speech. Uses Application Default Credentials."""

    provider_name: str = "google"

    def __init__(self, client: Any = None):
        from google.cloud import texttospeech

        self._tts = texttospeech
        self._client = client or texttospeech.TextToSpeechAsyncClient()
        self.language_code = os.getenv("TTS_LANGUAGE_CODE", "en-GB").strip() or "en-GB"
        self.voice_name = os.getenv("TTS_VOICE_NAME", "").strip() or None
        self.speaking_rate = config._env_float("TTS_SPEAKING_RATE", 0.95)

    async def synthesize(self, text: str) -> Optional[SynthesizedAudio]:
        spoken = sanitize_for_speech(text)
        if not spoken:
            return None
        tts = self._tts
        voice_kwargs: Dict[str, Any] = {
            "language_code": self.language_code,
            "ssml_gender": tts.SsmlVoiceGender.MALE,
        }
        if self.voice_name:
            voice_kwargs["name"] = self.voice_name
        response = await self._client.synthesize_speech(
            input=tts.SynthesisInput(text=spoken),
            voice=tts.VoiceSelectionParams(**voice_kwargs),
            audio_config=tts.AudioConfig(
                audio_encoding=tts.AudioEncoding.MP3,
                speaking_rate=self.speaking_rate,
            ),
        )
        if not response.audio_content:
            return None
        return SynthesizedAudio(
            audio_base64=base64.b64encode(response.audio_content).decode("ascii"),
            mime_type="audio/mpeg",
        )
