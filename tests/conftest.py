import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure project root is on sys.path for `import praxis.*`
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Default: offline providers and no model-assisted topic guesses unless a test opts in
os.environ.setdefault("AI_PROVIDER", "mock")
os.environ.setdefault("TOPIC_MODEL_FALLBACK", "0")

from praxis.providers.base import ChatClient  # noqa: E402
from praxis.scope import EnrollmentNotFound, StudentScope  # noqa: E402


class FakeChatClient(ChatClient):
    """Records calls; replies with ``reply`` after ``delay`` seconds, or raises ``error``."""

    provider_name = "fake"

    def __init__(self, reply: str = "Here is an explanation.", delay: float = 0.0, error: Optional[Exception] = None):
        super().__init__(model="fake-1")
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, contents, system=None, max_tokens=512, request_id=None):
        self.calls.append({"contents": contents, "system": system, "max_tokens": max_tokens, "request_id": request_id})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


def make_scope(email: str = "ada@example.com") -> StudentScope:
    return StudentScope(
        email=email,
        course_names=["Data Analytics"],
        allowed_phrases=["Data Analytics", "excel", "power bi", "sql", "pivot tables"],
    )


@pytest.fixture
def student_scope() -> StudentScope:
    return make_scope()


@pytest.fixture
def fake_chat_cls():
    return FakeChatClient


@pytest.fixture
def fake_chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def scope_resolver():
    """Resolver that knows ada@example.com and refuses everyone else."""

    async def resolve(email: str) -> StudentScope:
        if email.strip().lower() == "ada@example.com":
            return make_scope()
        raise EnrollmentNotFound()

    return resolve
