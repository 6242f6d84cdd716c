import base64
import io
import json
import wave
from typing import Any, Dict, List, Optional

from .base import ChatClient, SpeechClient, SynthesizedAudio


class MockChatClient(ChatClient):
    """Deterministic offline client: echoes the latest user turn."""

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None):
        super().__init__(model=model or "mock-chat-1")

    async def generate(
        self,
        contents: List[Dict[str, Any]],
        system: Optional[str] = None,
        max_tokens: int = 512,
        request_id: Optional[str] = None,
    ) -> str:
        last = ""
        for item in reversed(contents or []):
            if item.get("role") == "user":
                parts = item.get("parts") or []
                last = " ".join(str(p.get("text") or "") for p in parts).strip()
                break
        # Keyword extraction prompts expect a JSON body
        if system is None and last.startswith("From the student's latest message"):
            return json.dumps({"query": None})
        return f"You said: {last}" if last else "(no response text)"


class MockSpeechClient(SpeechClient):
    """Silent mono 16-bit PCM WAV whose length scales with the text."""

    provider_name: str = "mock"

    async def synthesize(self, text: str) -> Optional[SynthesizedAudio]:
        if not (text or "").strip():
            return None
        duration_s = max(0.5, min(3.0, 0.6 + min(2.4, len(text) * 0.01)))
        fr = 16000
        nframes = int(duration_s * fr)
        buf = io.BytesIO()
        try:
            with wave.open(buf, "wb") as w:
                w.setnchannels(1)
                w.setsampwidth(2)
                w.setframerate(fr)
                w.writeframes(b"\x00\x00" * nframes)
            audio_bytes = buf.getvalue()
        finally:
            buf.close()
        return SynthesizedAudio(
            audio_base64=base64.b64encode(audio_bytes).decode("ascii"),
            mime_type="audio/wav",
        )
