import json
import os
from typing import Optional

from praxis import config

from .base import ChatClient, SearchClient, SpeechClient
from .mock import MockChatClient, MockSpeechClient

logger = config.configure_logger("praxis.ai.providers")


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_chat_client(provider: Optional[str] = None, model: Optional[str] = None) -> ChatClient:
    """Return a chat client based on env or explicit overrides.

    Env precedence:
      - AI_PROVIDER_CHAT
      - AI_PROVIDER
      - defaults to 'mock'
    Model from GEMINI_MODEL if not given.
    """
    prov = (provider or _env_str("AI_PROVIDER_CHAT") or _env_str("AI_PROVIDER") or "mock").lower()
    mdl = model or _env_str("GEMINI_MODEL") or None

    if prov in ("google", "gemini"):
        try:
            from .google import GoogleChatClient
            return GoogleChatClient(model=mdl)
        except Exception as e:
            logger.warning(json.dumps({"event": "chat_provider_fallback", "provider": prov, "error": str(e)}))
            return MockChatClient()

    return MockChatClient(model=mdl if prov in ("mock", "test") else None)


def get_speech_client(provider: Optional[str] = None) -> SpeechClient:
    """Env precedence: AI_PROVIDER_TTS, AI_PROVIDER, then 'mock'."""
    prov = (provider or _env_str("AI_PROVIDER_TTS") or _env_str("AI_PROVIDER") or "mock").lower()

    if prov in ("google", "gemini"):
        try:
            from .google import GoogleSpeechClient
            return GoogleSpeechClient()
        except Exception as e:
            logger.warning(json.dumps({"event": "tts_provider_fallback", "provider": prov, "error": str(e)}))
            return MockSpeechClient()

    return MockSpeechClient()


def get_search_client(provider: Optional[str] = None) -> Optional[SearchClient]:
    """Env precedence: SEARCH_PROVIDER, AI_PROVIDER. Only 'google' searches; anything else disables it."""
    prov = (provider or _env_str("SEARCH_PROVIDER") or _env_str("AI_PROVIDER") or "mock").lower()
    if prov in ("google", "gemini"):
        from .search import GoogleSearchClient
        return GoogleSearchClient()
    return None
