from typing import Any, Dict, List, Optional, Sequence

from praxis.providers.base import SearchResult
from praxis.scope import StudentScope


def system_instruction_base() -> str:
    return (
        "You are Praxis, a specialized AI tutor for Pluralcode Academy students.\n\n"
        "ROLE & STYLE\n"
        "- Teach like a patient human teacher: break explanations into steps, use simple examples, and ask brief check-in questions.\n"
        "- Keep your tone friendly, calm, and professional.\n"
        "- You are primarily used through VOICE, but your text answers are also shown on screen.\n\n"
        "QUIZZES\n"
        "- You may suggest a short quiz after explaining a topic.\n"
        "- When you provide a multiple-choice quiz, use this exact JSON-line format for EACH question:\n"
        '  QUIZ: {"question":"...","options":["A","B","C","D"],"correctIndex":1,"explanation":"..."}\n'
        "- Do NOT put curly braces inside the question, options, or explanation text.\n\n"
        "LINKS & RESOURCES\n"
        "- When you recommend YouTube videos or articles, include full URLs in the TEXT so the UI can show previews.\n"
        "- In voice, do NOT read out the full URL; just say you are sharing a link.\n\n"
        "SCOPE\n"
        "- Follow the extra [CONTEXT] block that describes the student's enrolled courses and allowed topics.\n"
        "- If a request is clearly unrelated to all enrolled courses, briefly say so and suggest 2-3 in-scope alternatives instead of answering it."
    )


QUIZ_MODE_INSTRUCTION = (
    "[QUIZ MODE OVERRIDE]\n"
    "The student has explicitly requested a quiz or test in their most recent message.\n"
    "For THIS reply you must:\n"
    "- Focus the quiz on the student's current topic or enrolled courses.\n"
    "- Generate EXACTLY 10 multiple-choice questions with exactly 4 options each.\n"
    "- Output each question on its own line in this exact format:\n"
    '  QUIZ: {"question":"...","options":["A","B","C","D"],"correctIndex":1,"explanation":"..."}\n'
    '- "correctIndex" must be 0, 1, 2, or 3 and must match the correct option.\n'
    "- You may include at most ONE short introductory sentence before the QUIZ lines."
)

KEYWORD_PROMPT = (
    "From the student's latest message, extract the single most relevant course topic (<= 8 words).\n"
    'Return strict JSON: {"query":"..."}\n\nMessage: '
)

DEFAULT_MAX_TOKENS = 512
QUIZ_MAX_TOKENS = 2048


def summarize_allowed(phrases: Sequence[str], n: int = 80) -> str:
    if not phrases:
        return "(none)"
    head = " • ".join(phrases[:n])
    if len(phrases) > n:
        head += f" • (+{len(phrases) - n} more)"
    return head


def build_context_header(
    scope: StudentScope,
    *,
    resolved_topic: Optional[str] = None,
    requested_format: Optional[str] = None,
    resources: Optional[Sequence[SearchResult]] = None,
) -> str:
    """Per-turn context block. ``resources`` is None when no search ran for this turn."""
    lines = [
        "[CONTEXT]",
        f"Student Email: {scope.email}",
        f'Enrolled Course(s): "{scope.course_list}"',
        f"[ALLOWED TOPICS SAMPLE] (not exhaustive, you may generalize): {summarize_allowed(scope.allowed_phrases)}",
        f"[RESOLVED TOPIC]: {resolved_topic or '(none)'}",
    ]
    if requested_format:
        lines.append(f"[REQUESTED FORMAT]: {requested_format}")
    if resources is not None:
        lines.extend(resources_block(resources))
    lines.append(
        "[POLICY] Focus on the student's enrolled course(s) and closely related tools. Standard tools for those "
        "courses are IN SCOPE even if the exact word is missing from the curriculum data. Only call a topic outside "
        "their curriculum if it is clearly unrelated to every enrolled course; then say so briefly and offer 2-3 "
        "in-scope alternatives."
    )
    return "\n".join(lines)


def build_system_instruction(header: str, *, quiz_mode: bool = False) -> str:
    parts = [system_instruction_base(), header]
    if quiz_mode:
        parts.append(QUIZ_MODE_INSTRUCTION)
    return "\n\n".join(parts)


def to_gemini_contents(turns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Map ``{role, text}`` turns to Gemini ``contents`` (assistant -> model)."""
    out: List[Dict[str, Any]] = []
    for t in turns:
        role = "model" if t.get("role") in ("assistant", "model") else "user"
        out.append({"role": role, "parts": [{"text": str(t.get("text") or "")}]})
    return out


def enrollment_answer(scope: StudentScope) -> str:
    if not scope.course_names:
        return "I couldn't find any active enrollments for you."
    return f"You're enrolled in: {scope.course_list}."


def resources_block(resources: Sequence[SearchResult]) -> List[str]:
    if not resources:
        return ["[RESOURCES]: none found. Do not invent links; explain the topic directly instead."]
    lines = ["[RESOURCES] Share these checked links with their full URLs. Do not invent others:"]
    lines.extend(f"- {r.title}: {r.link}" for r in resources)
    return lines
