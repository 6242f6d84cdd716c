import logging
import os
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    try:
        v = os.getenv(name, "1" if default else "0").strip().lower()
        return v in ("1", "true", "yes", "on")
    except Exception:
        return default


# Values are read at call time so tests can monkeypatch the environment.

def lms_api_key() -> Optional[str]:
    return _env_str("MY_LMS_API_KEY") or None


def require_lms_key() -> bool:
    return _env_bool("REQUIRE_LMS_KEY", False)


def enrollment_api_base() -> str:
    return _env_str("PLURALCODE_API_URL", "https://backend.pluralcode.institute").rstrip("/")


def enrollment_timeout_seconds() -> float:
    return _env_float("ENROLLMENT_TIMEOUT_SECONDS", 8.0)


def chat_timeout_seconds() -> float:
    return _env_float("AI_CHAT_TIMEOUT_SECONDS", 20.0)


def tts_timeout_seconds() -> float:
    return _env_float("TTS_TIMEOUT_SECONDS", 10.0)


def history_window() -> int:
    """Number of recent turns sent to the model. Clamped to [2, 200], default 40."""
    v = _env_int("HISTORY_WINDOW", 40)
    return max(2, min(200, v))


def topic_model_fallback_enabled() -> bool:
    return _env_bool("TOPIC_MODEL_FALLBACK", True)


def topic_model_timeout_seconds() -> float:
    return _env_float("TOPIC_MODEL_TIMEOUT_SECONDS", 4.0)


def dedupe_ttl_seconds() -> float:
    return _env_float("REQUEST_DEDUPE_TTL_SECONDS", 600.0)


def configure_logger(name: str) -> logging.Logger:
    """Return a named logger that emits under Uvicorn.

    Honors LOG_LEVEL (default INFO), attaches a message-only StreamHandler once
    and disables propagation to avoid duplicate lines with Uvicorn's root handlers.
    """
    logger = logging.getLogger(name)
    lvl = getattr(logging, _env_str("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logger.setLevel(lvl)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setLevel(lvl)
        h.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(h)
    logger.propagate = False
    return logger


def search_timeout_seconds() -> float:
    return _env_float("SEARCH_TIMEOUT_SECONDS", 6.0)


def search_budget_seconds() -> float:
    """Whole-turn allowance for a resource search, link checks included."""
    return _env_float("SEARCH_BUDGET_SECONDS", 15.0)
