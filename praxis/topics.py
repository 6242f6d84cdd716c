"""Topic and format heuristics for a single user message.

These are pattern matchers, not parsers: they bias toward precision (explicit and
exact matches first) and fall back to looser guesses. Each regex family lives in
its own named function so it can be tested in isolation.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Optional, Set

# Fuzzy matcher tuning. Not derived from any requirement; kept configurable.
FUZZY_ACCEPT_THRESHOLD = 0.35
FUZZY_STRONG_BONUS = 0.5
FUZZY_STRONG_KEYWORDS = frozenset([
    "scrum", "agile", "kanban", "sprint", "review", "retrospective", "backlog", "ceremonies", "events",
])

# Quote marks must not touch letters on their outer side, so "don't ... what's" is not a quote.
_QUOTED_RE = re.compile(r"(?<![A-Za-z])[\"“”']([^\"“”']{3,120})[\"“”'](?![A-Za-z])")
_ABOUT_RE = re.compile(r"\b(?:about|on|regarding|re:?)\s+([^.?]{3,140})", re.I)
_PRONOUN_RE = re.compile(r"\b(them|it|this|that|the subject)\b", re.I)
_TOKEN_RE = re.compile(r"\b[a-z0-9]+\b")

_FILLER_RE = re.compile(
    r"\b(give me|show me|videos?|articles?|materials?|docs?|documentation|please|kindly|about|on|regarding"
    r"|explain|teach|tell me|the subject)\b",
    re.I,
)

NEGATION_WORDS = ("don't", "dont", "do not", "no", "without", "except", "stop", "never", "no more", "anymore", "not")
NEGATION_WINDOW = 20

VIDEO_RE = re.compile(r"\bvideos?\b|\byoutube\b", re.I)
ARTICLE_RE = re.compile(r"\barticles?\b|\bmaterials?\b|\bdoc(s|umentation)?\b|\bguide\b|\bblog\b", re.I)
TEXT_RE = re.compile(r"\b(explain|explanation|teach me|just explain|write\s*up|notes|overview)\b|\bjust\s*(teach|explain)\b", re.I)
QUIZ_FORMAT_RE = re.compile(r"\b(quiz|test|assessment|exam|practice\s*(test|questions?)|challenge|test\s*me)\b", re.I)
FAQ_RE = re.compile(r"\b(faqs?|q\s*&\s*a|frequently\s*asked\s*questions)\b", re.I)
TEXT_ONLY_RE = re.compile(r"\btext only\b", re.I)

FORMAT_PRECEDENCE = ("quiz", "faq", "video", "article", "text")


def _fold(s: str) -> str:
    """Lowercase and strip diacritics."""
    decomposed = unicodedata.normalize("NFD", s or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def extract_explicit_topic(message: str) -> Optional[str]:
    """Return a quoted phrase, or the object of "about/on/regarding X"."""
    s = str(message or "")
    m = _QUOTED_RE.search(s)
    if m:
        return m.group(1).strip()
    m = _ABOUT_RE.search(s)
    if m:
        topic = re.sub(r"\s{2,}", " ", _PRONOUN_RE.sub("", m.group(1))).strip()
        return topic or None
    return None


def best_phrase_match(message: str, phrases: Iterable[str]) -> Optional[str]:
    """Longest allowed phrase literally contained in the message (case-insensitive)."""
    if not message:
        return None
    m = message.lower()
    best: Optional[str] = None
    best_len = 0
    for p in phrases:
        pp = str(p).lower()
        if pp and pp in m and len(pp) > best_len:
            best, best_len = p, len(pp)
    return best


def _tokens(s: str) -> Set[str]:
    return set(_TOKEN_RE.findall(str(s).lower()))


def fuzzy_score(message_tokens: Set[str], phrase: str) -> float:
    ptoks = _tokens(phrase)
    inter = ptoks & message_tokens
    score = len(inter) / max(1, len(ptoks))
    if inter & FUZZY_STRONG_KEYWORDS:
        score += FUZZY_STRONG_BONUS
    return score


def best_fuzzy_match(
    message: str,
    phrases: Iterable[str],
    *,
    threshold: float = FUZZY_ACCEPT_THRESHOLD,
) -> Optional[str]:
    """Phrase with the highest token-overlap score, if it reaches the threshold.

    Ties keep the first phrase seen.
    """
    if not message:
        return None
    toks = _tokens(message)
    best: Optional[str] = None
    best_score = -1.0
    for ph in phrases:
        score = fuzzy_score(toks, ph)
        if score > best_score:
            best, best_score = ph, score
    if best is not None and best_score >= threshold:
        return best
    return None


def normalize_query(q: str, max_words: int = 12) -> str:
    """Strip request filler words and punctuation to get a short search-style topic."""
    t = _FILLER_RE.sub("", (q or "").lower())
    t = re.sub(r"\b(them|it|this|that)\b", "", t)
    t = re.sub(r"[^\w\s\-+&/]", " ", t)
    t = re.sub(r"\s+", " ", t).strip()
    return " ".join(t.split(" ")[:max_words]).strip()


def is_enrollment_meta_query(message: str) -> bool:
    """"What course am I enrolled in?" and close variants."""
    m = _fold(message)
    return bool(
        re.search(r"\b(what|which)\b.*\b(course|program|track)s?\b.*\b(enroll|enrolled|registered|taking)\b", m)
        or re.search(r"\b(am i|my)\b.*\b(enrolled|course|program|track)\b", m)
        or re.search(r"\bwhich course am i (in|enrolled in)\b", m)
    )


def is_quiz_request(message: str) -> bool:
    t = (message or "").lower()
    if not t:
        return False
    if any(k in t for k in ("quiz", "test me", "practice questions", "practice test", "mcq")):
        return True
    return "multiple choice" in t and "question" in t


def has_negation_near(lower: str, pattern: "re.Pattern[str]", window: int = NEGATION_WINDOW) -> bool:
    """True when a negation word appears within ``window`` chars of any match."""
    for m in pattern.finditer(lower):
        start = max(0, m.start() - window)
        end = min(len(lower), m.end() + window)
        span = lower[start:end]
        if any(n in span for n in NEGATION_WORDS):
            return True
    return False


@dataclass
class FormatPreferences:
    """Per-session memory of format choices ("no more videos", "text only")."""

    blocklist: Set[str] = field(default_factory=set)
    preferred: Optional[str] = None


def update_format_preferences(message: str, prefs: FormatPreferences) -> FormatPreferences:
    lower = (message or "").lower()
    if (
        has_negation_near(lower, VIDEO_RE)
        or TEXT_ONLY_RE.search(lower)
        or re.search(r"\bno\s*more\s*videos?\b", lower)
    ):
        prefs.blocklist.add("video")
        if prefs.preferred is None and re.search(r"just\s*explain|text only", lower):
            prefs.preferred = "text"
    if has_negation_near(lower, ARTICLE_RE) or re.search(r"\bno\s*more\s*articles?\b", lower):
        prefs.blocklist.add("article")
    return prefs


def detect_format(message: str, prefs: Optional[FormatPreferences] = None) -> Optional[str]:
    """Requested output format, precedence quiz > faq > video > article > text."""
    lower = (message or "").lower()
    avoids = set(prefs.blocklist) if prefs else set()
    video_negated = has_negation_near(lower, VIDEO_RE)
    article_negated = has_negation_near(lower, ARTICLE_RE)
    if video_negated or TEXT_ONLY_RE.search(lower):
        avoids.add("video")
    if article_negated:
        avoids.add("article")

    wants = {
        "quiz": bool(QUIZ_FORMAT_RE.search(lower)),
        "faq": bool(FAQ_RE.search(lower)),
        "video": bool(VIDEO_RE.search(lower)) and not video_negated,
        "article": bool(ARTICLE_RE.search(lower)) and not article_negated,
        "text": bool(TEXT_RE.search(lower) or TEXT_ONLY_RE.search(lower)),
    }
    for fmt in FORMAT_PRECEDENCE:
        if wants[fmt] and fmt not in avoids:
            return fmt
    return None


KeywordExtractor = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class TopicResolution:
    topic: Optional[str]
    source: str  # explicit | phrase | fuzzy | carryover | model | none


async def resolve_topic(
    message: str,
    allowed_phrases: List[str],
    *,
    last_topic: Optional[str] = None,
    keyword_extractor: Optional[KeywordExtractor] = None,
) -> TopicResolution:
    """Resolve the topic of a message.

    Order: explicit extraction, longest exact phrase, fuzzy overlap, the last
    resolved topic, then a model-assisted keyword guess.
    """
    explicit = extract_explicit_topic(message)
    if explicit:
        return TopicResolution(explicit, "explicit")
    exact = best_phrase_match(message, allowed_phrases)
    if exact:
        return TopicResolution(exact, "phrase")
    fuzzy = best_fuzzy_match(message, allowed_phrases)
    if fuzzy:
        return TopicResolution(fuzzy, "fuzzy")
    if last_topic:
        return TopicResolution(last_topic, "carryover")
    if keyword_extractor is not None:
        guess = await keyword_extractor(message)
        guess = normalize_query(guess or "")
        if guess:
            return TopicResolution(guess, "model")
    return TopicResolution(None, "none")
