"""WebSocket tutoring protocol.

The gateway is transport-agnostic: the FastAPI route feeds it raw frames and
hands it a ``send`` coroutine. Client -> server messages are ``start``,
``user_text``, ``stop`` and ``ping``; server -> client messages are ``ready``,
``assistant_text``, ``error`` and ``pong``.
"""
import asyncio
import json
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from praxis import config
from praxis.metrics import (
    LLM_SECONDS,
    SCOPE_LOOKUPS_TOTAL,
    SEARCH_REQUESTS_TOTAL,
    TTS_FAILURES_TOTAL,
    TURNS_TOTAL,
    WS_SESSIONS_ACTIVE,
)
from praxis.prompts import (
    DEFAULT_MAX_TOKENS,
    KEYWORD_PROMPT,
    QUIZ_MAX_TOKENS,
    build_context_header,
    build_system_instruction,
    enrollment_answer,
    to_gemini_contents,
)
from praxis.providers.base import (
    ChatClient,
    ProviderError,
    SearchClient,
    SearchResult,
    SpeechClient,
    SynthesizedAudio,
)
from praxis.scope import EnrollmentNotFound, ScopeError, StudentScope
from praxis.sessions import Session, SessionRegistry, clean_history, history_window
from praxis.topics import (
    detect_format,
    is_enrollment_meta_query,
    is_quiz_request,
    normalize_query,
    resolve_topic,
    update_format_preferences,
)

logger = config.configure_logger("praxis.ai.gateway")

ScopeResolver = Callable[[str], Awaitable[StudentScope]]
SendFn = Callable[[Dict[str, Any]], Awaitable[None]]

BUSY_MESSAGE = "Praxis is still responding to your previous message. Please wait."
NOT_INITIALIZED_MESSAGE = "Session not initialized. Send start first."
INVALID_KEY_MESSAGE = "Invalid LMS key."
LLM_FAILED_MESSAGE = "Praxis could not answer right now. Please try again."

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.S)


class Connection:
    """One client socket as seen by the gateway."""

    def __init__(self, send: SendFn, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self._send = send
        self.turn_task: Optional[asyncio.Task] = None

    async def send(self, message: Dict[str, Any]) -> bool:
        try:
            await self._send(message)
            return True
        except Exception as e:
            # Peer went away mid-turn; the receive loop will clean up
            logger.debug(json.dumps({
                "event": "ws_send_failed",
                "connectionId": self.connection_id,
                "type": message.get("type"),
                "error": type(e).__name__,
            }))
            return False


class TutorGateway:
    def __init__(
        self,
        registry: SessionRegistry,
        chat_client: ChatClient,
        speech_client: Optional[SpeechClient],
        scope_resolver: ScopeResolver,
        search_client: Optional[SearchClient] = None,
    ):
        self.registry = registry
        self.chat_client = chat_client
        self.speech_client = speech_client
        self.scope_resolver = scope_resolver
        self.search_client = search_client
        self._connections: Dict[str, Connection] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def open_connection(self, send: SendFn, connection_id: Optional[str] = None) -> Connection:
        conn = Connection(send, connection_id)
        self._connections[conn.connection_id] = conn
        logger.info(json.dumps({"event": "ws_connected", "connectionId": conn.connection_id}))
        return conn

    async def close_connection(self, conn: Connection) -> None:
        """Cancel any in-flight turn and drop the session. Safe to call twice."""
        await self._cancel_turn(conn)
        self._connections.pop(conn.connection_id, None)
        if self.registry.remove(conn.connection_id) is not None:
            WS_SESSIONS_ACTIVE.dec()
            logger.info(json.dumps({"event": "session_closed", "connectionId": conn.connection_id}))

    async def shutdown(self) -> None:
        for conn in list(self._connections.values()):
            await self.close_connection(conn)

    async def _cancel_turn(self, conn: Connection) -> None:
        task = conn.turn_task
        conn.turn_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------
    async def handle_message(self, conn: Connection, raw: Any) -> bool:
        """Handle one client frame. Returns False when the socket should close."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(json.dumps({
                "event": "ws_bad_json",
                "connectionId": conn.connection_id,
                "error": str(e)[:200],
            }))
            return True
        if not isinstance(msg, dict):
            logger.warning(json.dumps({"event": "ws_bad_message", "connectionId": conn.connection_id}))
            return True

        mtype = msg.get("type")
        if mtype == "ping":
            await conn.send({"type": "pong"})
            return True
        if mtype == "start":
            return await self._on_start(conn, msg)
        if mtype == "user_text":
            await self._on_user_text(conn, msg)
            return True
        if mtype == "stop":
            await self.close_connection(conn)
            return False
        logger.debug(json.dumps({"event": "ws_unknown_type", "connectionId": conn.connection_id, "type": mtype}))
        return True

    def check_lms_key(self, provided: Any) -> bool:
        """A supplied key must match MY_LMS_API_KEY; a missing key passes unless REQUIRE_LMS_KEY is set.

        With no MY_LMS_API_KEY configured, any supplied key is rejected.
        """
        if provided is None or provided == "":
            return not config.require_lms_key()
        expected = config.lms_api_key()
        return bool(expected) and str(provided) == expected

    async def resolve_scope(self, email: Any) -> StudentScope:
        try:
            scope = await self.scope_resolver(str(email or ""))
        except EnrollmentNotFound:
            SCOPE_LOOKUPS_TOTAL.labels(outcome="not_enrolled").inc()
            raise
        except ScopeError as e:
            outcome = "invalid" if type(e) is ScopeError else "lookup_error"
            SCOPE_LOOKUPS_TOTAL.labels(outcome=outcome).inc()
            raise
        SCOPE_LOOKUPS_TOTAL.labels(outcome="ok").inc()
        return scope

    async def _on_start(self, conn: Connection, msg: Dict[str, Any]) -> bool:
        if not self.check_lms_key(msg.get("lmsKey")):
            logger.warning(json.dumps({"event": "ws_invalid_lms_key", "connectionId": conn.connection_id}))
            await conn.send({"type": "error", "error": INVALID_KEY_MESSAGE})
            return False
        email = msg.get("student_email") or msg.get("studentEmail")
        try:
            scope = await self.resolve_scope(email)
        except ScopeError as e:
            logger.info(json.dumps({
                "event": "ws_start_refused",
                "connectionId": conn.connection_id,
                "reason": type(e).__name__,
            }))
            await conn.send({"type": "error", "error": str(e)})
            return False

        # A second start replaces the session; its pending answer is obsolete
        await self._cancel_turn(conn)
        replaced = conn.connection_id in self.registry
        self.registry.create(conn.connection_id, scope, clean_history(msg.get("history")))
        if not replaced:
            WS_SESSIONS_ACTIVE.inc()
        logger.info(json.dumps({
            "event": "session_started",
            "connectionId": conn.connection_id,
            "courses": scope.course_names,
            "phraseCount": len(scope.allowed_phrases),
            "replaced": replaced,
        }))
        await conn.send({"type": "ready"})
        return True

    async def _on_user_text(self, conn: Connection, msg: Dict[str, Any]) -> None:
        request_id = str(msg.get("requestId") or "").strip() or str(uuid.uuid4())
        session = self.registry.get(conn.connection_id)
        if session is None:
            await conn.send({"type": "error", "error": NOT_INITIALIZED_MESSAGE, "requestId": request_id})
            return
        text = str(msg.get("text") or "").strip()
        if not text:
            return
        if session.busy:
            TURNS_TOTAL.labels(transport="ws", outcome="busy").inc()
            logger.info(json.dumps({
                "event": "turn_rejected_busy",
                "connectionId": conn.connection_id,
                "requestId": request_id,
                "inFlight": session.last_request_id,
            }))
            await conn.send({"type": "error", "error": BUSY_MESSAGE, "requestId": request_id})
            return
        session.busy = True
        session.last_request_id = request_id
        conn.turn_task = asyncio.create_task(self._run_turn(conn, session, text, request_id))

    async def _run_turn(self, conn: Connection, session: Session, text: str, request_id: str) -> None:
        reply: Optional[str] = None
        audio: Optional[SynthesizedAudio] = None
        try:
            try:
                reply = await self.compose_reply(session, text, request_id)
            except Exception as e:
                logger.error(json.dumps({
                    "event": "turn_failed",
                    "connectionId": conn.connection_id,
                    "requestId": request_id,
                    "error": type(e).__name__,
                    "message": str(e)[:256],
                }))
            else:
                audio = await self.synthesize(reply, request_id)
        finally:
            # Cleared before replying so the client's next utterance is accepted
            session.busy = False

        if reply is None:
            TURNS_TOTAL.labels(transport="ws", outcome="error").inc()
            await conn.send({"type": "error", "error": LLM_FAILED_MESSAGE, "requestId": request_id})
            return
        TURNS_TOTAL.labels(transport="ws", outcome="ok").inc()
        out: Dict[str, Any] = {"type": "assistant_text", "text": reply, "requestId": request_id}
        if audio is not None:
            out["audio"] = audio.audio_base64
            out["audioMime"] = audio.mime_type
        await conn.send(out)

    # ------------------------------------------------------------------
    # Turn pipeline (shared with HTTP /api/chat)
    # ------------------------------------------------------------------
    async def compose_reply(self, session: Session, text: str, request_id: Optional[str] = None) -> str:
        """Append the user turn, call the model and append its answer.

        Raises ProviderError when the model call fails or times out.
        """
        limit = config.history_window()
        session.add_turn("user", text, max_turns=limit)

        if is_enrollment_meta_query(text):
            reply = enrollment_answer(session.scope)
            session.add_turn("assistant", reply, max_turns=limit)
            return reply

        update_format_preferences(text, session.formats)
        detected_format = detect_format(text, session.formats)
        requested_format = detected_format or session.formats.preferred
        extractor = self.extract_keyword if config.topic_model_fallback_enabled() else None
        resolution = await resolve_topic(
            text,
            session.scope.allowed_phrases,
            last_topic=session.last_topic,
            keyword_extractor=extractor,
        )
        if resolution.topic:
            session.last_topic = resolution.topic

        resources = None
        if detected_format in ("video", "article"):
            query = normalize_query(resolution.topic or text)
            resources = await self.find_resources(detected_format, query, request_id)

        quiz_mode = is_quiz_request(text)
        header = build_context_header(
            session.scope,
            resolved_topic=resolution.topic,
            requested_format=requested_format,
            resources=resources,
        )
        system = build_system_instruction(header, quiz_mode=quiz_mode)
        contents = to_gemini_contents(history_window(session.history, limit))
        logger.debug(json.dumps({
            "event": "turn_prompt",
            "requestId": request_id,
            "topic": resolution.topic,
            "topicSource": resolution.source,
            "format": requested_format,
            "quizMode": quiz_mode,
            "resources": None if resources is None else len(resources),
            "turns": len(contents),
        }))

        provider = getattr(self.chat_client, "provider_name", "unknown")
        model = getattr(self.chat_client, "model", None) or "unknown"
        t0 = time.perf_counter()
        try:
            reply = await asyncio.wait_for(
                self.chat_client.generate(
                    contents,
                    system=system,
                    max_tokens=QUIZ_MAX_TOKENS if quiz_mode else DEFAULT_MAX_TOKENS,
                    request_id=request_id,
                ),
                timeout=config.chat_timeout_seconds(),
            )
        except asyncio.TimeoutError as e:
            raise ProviderError("LLM request timed out") from e
        finally:
            LLM_SECONDS.labels(provider=provider, model=model).observe(time.perf_counter() - t0)

        reply = (reply or "").strip() or "(no response text)"
        session.add_turn("assistant", reply, max_turns=limit)
        return reply

    async def extract_keyword(self, message: str) -> Optional[str]:
        """Ask the model for a single topic keyword. Any failure yields None."""
        contents = [{"role": "user", "parts": [{"text": KEYWORD_PROMPT + message}]}]
        try:
            raw = await asyncio.wait_for(
                self.chat_client.generate(contents, system=None, max_tokens=64),
                timeout=config.topic_model_timeout_seconds(),
            )
            m = _JSON_OBJECT_RE.search(raw or "")
            data = json.loads(m.group(0)) if m else {}
        except Exception as e:
            logger.debug(json.dumps({"event": "keyword_extract_failed", "error": type(e).__name__}))
            return None
        query = data.get("query") if isinstance(data, dict) else None
        return str(query) if query else None

    async def find_resources(
        self, kind: str, query: str, request_id: Optional[str] = None
    ) -> Optional[List[SearchResult]]:
        """Checked video or article links for the prompt.

        None when search is disabled; [] when it ran and found nothing or failed.
        """
        if self.search_client is None or not query:
            return None
        search = self.search_client.search_videos if kind == "video" else self.search_client.search_articles
        try:
            results = await asyncio.wait_for(search(query), timeout=config.search_budget_seconds())
        except asyncio.TimeoutError:
            outcome = "timeout"
        except Exception as e:
            outcome = "error"
            logger.warning(json.dumps({
                "event": "search_failed",
                "kind": kind,
                "requestId": request_id,
                "error": type(e).__name__,
                "message": str(e)[:256],
            }))
        else:
            SEARCH_REQUESTS_TOTAL.labels(kind=kind, outcome="ok" if results else "empty").inc()
            return list(results)
        SEARCH_REQUESTS_TOTAL.labels(kind=kind, outcome=outcome).inc()
        return []

    async def synthesize(self, text: str, request_id: Optional[str] = None) -> Optional[SynthesizedAudio]:
        """Best-effort speech. Failures are logged and counted; the caller replies without audio."""
        if self.speech_client is None:
            return None
        provider = getattr(self.speech_client, "provider_name", "unknown")
        try:
            return await asyncio.wait_for(
                self.speech_client.synthesize(text),
                timeout=config.tts_timeout_seconds(),
            )
        except asyncio.TimeoutError:
            reason = "timeout"
        except Exception as e:
            reason = type(e).__name__
        TTS_FAILURES_TOTAL.labels(provider=provider, reason=reason).inc()
        logger.warning(json.dumps({"event": "tts_failed", "requestId": request_id, "reason": reason}))
        return None

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._connections),
            "sessions": len(self.registry),
            "busySessions": self.registry.busy_count(),
        }
