import json
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

_URL_RE = re.compile(r"(https?://[^\s)]+)")


@dataclass
class QuizItem:
    question: str
    options: List[str]
    correct_index: int
    explanation: str = ""

    def is_correct(self, choice: int) -> bool:
        return choice == self.correct_index


@dataclass
class RenderedReply:
    text: str
    quizzes: List[QuizItem] = field(default_factory=list)
    youtube_links: List[str] = field(default_factory=list)


def _parse_quiz_line(payload: str) -> Optional[QuizItem]:
    try:
        obj = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    question = obj.get("question")
    options = obj.get("options")
    idx = obj.get("correctIndex")
    if not isinstance(question, str) or not isinstance(options, list) or len(options) != 4:
        return None
    if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < 4:
        return None
    return QuizItem(
        question=question,
        options=[str(o) for o in options],
        correct_index=idx,
        explanation=str(obj.get("explanation") or ""),
    )


def extract_quizzes(text: str) -> Tuple[str, List[QuizItem]]:
    """Split ``QUIZ: {...}`` lines out of a reply.

    Malformed quiz lines stay in the transcript text.
    """
    quizzes: List[QuizItem] = []
    if not text:
        return text or "", quizzes
    kept = []
    for line in re.split(r"\r?\n", text):
        trimmed = line.strip()
        if trimmed.upper().startswith("QUIZ:"):
            quiz = _parse_quiz_line(trimmed[5:].strip())
            if quiz is not None:
                quizzes.append(quiz)
                continue
        kept.append(line)
    return "\n".join(kept).strip(), quizzes


def extract_youtube_links(text: str) -> List[str]:
    links = []
    for m in _URL_RE.finditer(text or ""):
        url = re.sub(r"[),.]+$", "", m.group(1))
        if "youtube.com/watch" in url or "youtu.be" in url:
            links.append(url)
    return links


def youtube_video_id(url: str) -> Optional[str]:
    try:
        u = urlparse(url)
    except ValueError:
        return None
    host = u.hostname or ""
    if "youtu.be" in host:
        return u.path.lstrip("/") or None
    if "youtube.com" in host:
        return (parse_qs(u.query).get("v") or [None])[0]
    return None


def render_reply(text: str) -> RenderedReply:
    clean, quizzes = extract_quizzes(text)
    return RenderedReply(text=clean, quizzes=quizzes, youtube_links=extract_youtube_links(clean))
