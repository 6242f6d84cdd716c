import re

_STRUCTURED_PREFIXES = ("QUIZ:", "VIDEO:", "ARTICLE:")
_INLINE_STRUCTURED_RE = re.compile(r"(QUIZ|VIDEO|ARTICLE):\s*{[^}]*}", re.I)
_RESOURCES_CUT_RE = re.compile(r"(links:|resources:)", re.I)
_URL_RE = re.compile(r"https?://\S+", re.I)
_BARE_DOMAIN_RE = re.compile(r"\b[^\s]+\.(com|net|org|io|ai|edu|co|dev|info)(/[^\s]*)?", re.I)
_WWW_RE = re.compile(r"\bwww\.[^\s]+", re.I)
_INLINE_CODE_RE = re.compile(r"`[^`]*`")
_MARKDOWN_RE = re.compile(r"[*_>#\-]+")
_DECOR_RE = re.compile(r"[•~_=^]+")
_BRACKETS_RE = re.compile(r"[\[\](){}<>/\\|]+")
_PUNCT_RUN_RE = re.compile(r"[;:]{2,}")
_EXCEL_RE = re.compile(r"(?<!Microsoft )\bExcel\b", re.I)
_SPACES_RE = re.compile(r"\s{2,}")


def sanitize_for_speech(text: str) -> str:
    """Reduce a model reply to what should be read aloud.

    Drops structured QUIZ/VIDEO/ARTICLE lines, trailing link sections, URLs and
    markdown symbols.
    """
    if not text:
        return ""
    lines = [
        line for line in re.split(r"\r?\n", text)
        if not line.strip().upper().startswith(_STRUCTURED_PREFIXES)
    ]
    t = " ".join(lines)
    t = _INLINE_STRUCTURED_RE.sub(" ", t)
    cut = _RESOURCES_CUT_RE.search(t)
    if cut:
        t = t[: cut.start()]
    t = _URL_RE.sub(" ", t)
    t = _BARE_DOMAIN_RE.sub(" ", t)
    t = _WWW_RE.sub(" ", t)
    t = _INLINE_CODE_RE.sub(" ", t)
    t = _MARKDOWN_RE.sub(" ", t)
    t = _DECOR_RE.sub(" ", t)
    t = _BRACKETS_RE.sub(" ", t)
    t = _PUNCT_RUN_RE.sub(" ", t)
    # TTS voices mispronounce the bare product name
    t = _EXCEL_RE.sub("Microsoft Excel", t)
    t = _SPACES_RE.sub(" ", t)
    return t.strip()
