"""In-process registry of live tutoring sessions, one per WebSocket connection."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from praxis.scope import StudentScope
from praxis.topics import FormatPreferences

ROLES = ("user", "assistant")


def clean_history(items: Any, *, model_role: bool = False) -> List[Dict[str, str]]:
    """Keep only well-formed ``{role: user|assistant, text: str}`` turns from client input.

    With ``model_role`` set, Gemini-style ``model`` turns are read as ``assistant``.
    """
    out: List[Dict[str, str]] = []
    if not isinstance(items, list):
        return out
    for it in items:
        if not isinstance(it, dict):
            continue
        role = it.get("role")
        if model_role and role == "model":
            role = "assistant"
        text = it.get("text")
        if role in ROLES and isinstance(text, str) and text.strip():
            out.append({"role": role, "text": text})
    return out


def history_window(turns: List[Dict[str, str]], limit: int) -> List[Dict[str, str]]:
    """Last ``limit`` turns, trimmed so the window never opens on an assistant turn."""
    window = turns[-max(1, limit):]
    while window and window[0].get("role") != "user":
        window = window[1:]
    return window


@dataclass
class Session:
    session_id: str
    scope: StudentScope
    history: List[Dict[str, str]] = field(default_factory=list)
    last_request_id: Optional[str] = None
    busy: bool = False
    last_topic: Optional[str] = None
    formats: FormatPreferences = field(default_factory=FormatPreferences)
    created_at: float = field(default_factory=time.time)

    @property
    def student_email(self) -> str:
        return self.scope.email

    def add_turn(self, role: str, text: str, *, max_turns: Optional[int] = None) -> None:
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        self.history.append({"role": role, "text": text})
        if max_turns and len(self.history) > max_turns:
            del self.history[: len(self.history) - max_turns]


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(
        self,
        session_id: str,
        scope: StudentScope,
        history: Optional[Iterable[Dict[str, str]]] = None,
    ) -> Session:
        """Create (or replace) the session for a connection."""
        session = Session(session_id=session_id, scope=scope, history=list(history or []))
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def busy_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.busy)
