from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ProviderError(RuntimeError):
    """A vendor call failed (non-2xx, timeout, malformed response)."""


@dataclass
class SynthesizedAudio:
    audio_base64: str
    mime_type: str


class ChatClient(abc.ABC):
    """Abstract single-shot generation client.

    ``contents`` follows the Gemini shape: ``[{"role": "user"|"model", "parts": [{"text": ...}]}]``.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    async def generate(
        self,
        contents: List[Dict[str, Any]],
        system: Optional[str] = None,
        max_tokens: int = 512,
        request_id: Optional[str] = None,
    ) -> str:
        ...


class SpeechClient(abc.ABC):
    """Abstract text-to-speech client. Returns None when there is nothing to speak."""

    provider_name: str = "unknown"

    @abc.abstractmethod
    async def synthesize(self, text: str) -> Optional[SynthesizedAudio]:
        ...


@dataclass
class SearchResult:
    title: str
    link: str
    snippet: str = ""


class SearchClient(abc.ABC):
    """Learning-resource search. Results are live links, at most a handful per query."""

    provider_name: str = "unknown"

    @abc.abstractmethod
    async def search_videos(self, query: str) -> List[SearchResult]:
        ...

    @abc.abstractmethod
    async def search_articles(self, query: str) -> List[SearchResult]:
        ...
