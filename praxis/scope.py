"""Student scope resolution against the enrollment API.

The enrollment payload has no fixed shape: course entries may carry topics under
``course_topics``, ``modules``, ``children`` and so on, nested arbitrarily deep.
We walk the whole JSON tree and collect strings that sit under known key names,
then expand them through a small synonym table so that common tools of a course
(Excel for Data Analytics, sprint planning for Scrum) count as in scope.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx

from praxis import config


logger = config.configure_logger("praxis.ai.scope")


class ScopeError(Exception):
    """Base class for enrollment/scope failures. The message is user-facing."""


class EnrollmentNotFound(ScopeError):
    def __init__(self, message: str = "No active course enrollment found."):
        super().__init__(message)


class EnrollmentLookupError(ScopeError):
    def __init__(self, message: str = "Could not verify student enrollment."):
        super().__init__(message)


TOPIC_STRING_KEYS = frozenset([
    "coursename", "course", "course_name", "name", "title", "topic", "topic_name", "label",
    "module", "module_name", "lesson", "lesson_name", "chapter", "section", "unit",
])

COURSE_NAME_KEYS = ("coursename", "course_name", "name", "title")

MAX_PHRASE_CHARS = 200

_URL_RE = re.compile(r"^https?://", re.I)

AGILE_TERMS = (
    "scrum", "agile", "scrum events", "scrum ceremonies", "agile ceremonies",
    "sprint planning", "daily scrum", "daily standup", "sprint review",
    "sprint retrospective", "backlog refinement", "product backlog refinement",
)

DATA_TOOLING_TERMS = (
    "python", "numpy", "pandas", "matplotlib", "seaborn", "scikit-learn", "jupyter",
    "anaconda", "etl", "data wrangling", "excel", "power bi", "sql",
)

# (pattern on the lowercased phrase, phrases added to the bag)
SYNONYM_TABLE: Tuple[Tuple["re.Pattern[str]", Tuple[str, ...]], ...] = (
    (re.compile(r"javascript"), ("javascript", "js")),
    (re.compile(r"python|data\s*analytics?"), DATA_TOOLING_TERMS),
    (re.compile(r"data\s*analytics?"), ("data analytics",)),
    (re.compile(r"\bsql\b"), ("sql",)),
    (re.compile(r"excel"), ("excel",)),
    (re.compile(r"vlookup"), ("vlookup",)),
    (re.compile(r"hlookup"), ("hlookup",)),
    (re.compile(r"power\s*bi|powerbi|pbi"), ("power bi", "pbi", "powerbi")),
    (re.compile(r"machine\s*learning"), ("ml", "machine learning")),
    (re.compile(r"\bux\b|user\s*experience"), ("ux", "user experience")),
    (re.compile(r"\bui\b|user\s*interface"), ("ui", "user interface")),
    (re.compile(r"web\s*scraping"), ("web scraping",)),
    (re.compile(r"dax"), ("dax",)),
    (re.compile(r"\bscrum\b|\bagile\b"), AGILE_TERMS),
    (re.compile(r"kanban"), ("kanban",)),
)


class PhraseBag:
    """Insertion-ordered, case-insensitively deduplicated set of phrases."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def add(self, phrase: str) -> None:
        key = phrase.lower()
        if key not in self._items:
            self._items[key] = phrase

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items.values())


def add_with_synonyms(phrase: Any, bag: PhraseBag) -> PhraseBag:
    display = str(phrase or "").strip()
    if not display:
        return bag
    bag.add(display)
    lowered = display.lower()
    for pattern, extra in SYNONYM_TABLE:
        if pattern.search(lowered):
            for term in extra:
                bag.add(term)
    return bag


def iter_keyed_strings(node: Any, key: Optional[str] = None) -> Iterator[Tuple[Optional[str], str]]:
    """Yield ``(parent_key, value)`` for every string leaf of a JSON tree.

    Array items inherit the key of the array that holds them; object members
    use their own (lowercased) key. Numbers, booleans and nulls are skipped.
    """
    if isinstance(node, str):
        yield key, node
    elif isinstance(node, dict):
        for k, v in node.items():
            yield from iter_keyed_strings(v, str(k).lower())
    elif isinstance(node, list):
        for item in node:
            # Strings directly inside arrays are not harvested: only keyed strings count.
            if isinstance(item, str):
                continue
            yield from iter_keyed_strings(item, key)


def harvest_phrases(node: Any, bag: PhraseBag) -> PhraseBag:
    for key, value in iter_keyed_strings(node):
        if key not in TOPIC_STRING_KEYS:
            continue
        s = value.strip()
        if not s or _URL_RE.match(s) or len(s) > MAX_PHRASE_CHARS:
            continue
        add_with_synonyms(s, bag)
    return bag


@dataclass
class StudentScope:
    email: str
    course_names: List[str] = field(default_factory=list)
    allowed_phrases: List[str] = field(default_factory=list)

    @property
    def course_list(self) -> str:
        return ", ".join(self.course_names)


def _course_name(entry: Dict[str, Any]) -> str:
    for k in COURSE_NAME_KEYS:
        v = entry.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def build_scope_from_payload(email: str, data: Any) -> StudentScope:
    """Build a scope from an enrollment payload.

    Raises EnrollmentNotFound when no course name can be found: an empty scope
    is never returned as a success.
    """
    bag = PhraseBag()
    course_names: List[str] = []
    payload = data if isinstance(data, dict) else {}
    enrolled = payload.get("enrolled_courses")
    for entry in enrolled if isinstance(enrolled, list) else []:
        if not isinstance(entry, dict):
            continue
        name = _course_name(entry)
        if name:
            course_names.append(name)
            add_with_synonyms(name, bag)
        topics = entry.get("course_topics")
        harvest_phrases(topics if topics else entry, bag)
    sandbox = payload.get("sandbox")
    for entry in sandbox if isinstance(sandbox, list) else []:
        harvest_phrases(entry, bag)

    if not course_names:
        raise EnrollmentNotFound()
    return StudentScope(email=email, course_names=course_names, allowed_phrases=list(bag))


def normalize_email(email: Any) -> str:
    return str(email or "").strip().lower()


async def fetch_student_scope(email: str, *, timeout: Optional[float] = None) -> StudentScope:
    """Query the enrollment API for a student and build their scope."""
    clean = normalize_email(email)
    if not clean:
        raise ScopeError("Student email is missing.")
    url = f"{config.enrollment_api_base()}/student/praxis_get_student_courses"
    t = config.enrollment_timeout_seconds() if timeout is None else timeout
    try:
        async with httpx.AsyncClient(timeout=t) as client:
            resp = await client.get(url, params={"email": clean})
        if resp.status_code >= 400:
            logger.warning(json.dumps({
                "event": "enrollment_http_error",
                "status": resp.status_code,
                "body": (resp.text or "")[:512],
            }))
            raise EnrollmentLookupError()
        data = resp.json()
    except ScopeError:
        raise
    except Exception as e:
        logger.warning(json.dumps({"event": "enrollment_lookup_failed", "error": type(e).__name__, "message": str(e)[:256]}))
        raise EnrollmentLookupError() from e

    scope = build_scope_from_payload(clean, data)
    logger.debug(json.dumps({
        "event": "scope_resolved",
        "courses": scope.course_names,
        "phraseCount": len(scope.allowed_phrases),
        "sample": scope.allowed_phrases[:30],
    }))
    return scope
