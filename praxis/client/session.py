import asyncio
import base64
import json
import secrets
import time
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from praxis import config

from .backoff import ReconnectPolicy
from .render import QuizItem, render_reply
from .speech import PlaybackController

logger = config.configure_logger("praxis.client.session")

HEARTBEAT_INTERVAL = 20.0

EventCallback = Callable[[str, Dict[str, Any]], None]


def make_request_id() -> str:
    return f"{int(time.time() * 1000):x}-{secrets.token_hex(3)}"


class VoiceClient:
    """Drives one logical tutoring session over /ws, reconnecting on unexpected drops.

    The client owns the conversation history and re-sends it in every ``start``
    so a reconnected server session picks up where the old one left off.
    """

    def __init__(
        self,
        url: str,
        email: str,
        lms_key: Optional[str] = None,
        *,
        playback: Optional[PlaybackController] = None,
        policy: Optional[ReconnectPolicy] = None,
        connect: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        on_event: Optional[EventCallback] = None,
    ):
        self.url = url
        self.email = email
        self.lms_key = lms_key or None
        self.playback = playback or PlaybackController()
        self.policy = policy or ReconnectPolicy()
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self.heartbeat_interval = heartbeat_interval
        self.on_event = on_event

        self.history: List[Dict[str, str]] = []
        self.quizzes: List[QuizItem] = []
        self.resources: List[str] = []
        self.last_request_id: Optional[str] = None
        self.ready = False
        self.session_active = False
        self.manual_close = False
        self.refused = False
        self._ws: Any = None

    def _emit(self, kind: str, **payload: Any) -> None:
        if self.on_event is not None:
            self.on_event(kind, payload)

    def start_message(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"type": "start", "student_email": self.email, "history": list(self.history)}
        if self.lms_key:
            msg["lmsKey"] = self.lms_key
        return msg

    async def run(self) -> None:
        """Connect and pump messages until ``stop()``, a refusal, or reconnects run out."""
        self.session_active = True
        self.manual_close = False
        self.refused = False
        self.policy.reset()
        while self.session_active and not self.manual_close:
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    await ws.send(json.dumps(self.start_message()))
                    heartbeat = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for raw in ws:
                            self.handle_message(raw)
                    finally:
                        heartbeat.cancel()
                        await asyncio.gather(heartbeat, return_exceptions=True)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning(json.dumps({"event": "ws_connection_lost", "error": type(e).__name__}))
            finally:
                self._ws = None
                self.ready = False
                self.playback.stop()

            if self.manual_close or not self.session_active:
                break
            delay = self.policy.next_delay()
            if delay is None:
                logger.error(json.dumps({"event": "ws_reconnect_exhausted", "attempts": self.policy.attempts}))
                self._emit("closed", reason="reconnect attempts exhausted")
                break
            self._emit("reconnecting", attempt=self.policy.attempts, delay=delay)
            await self._sleep(delay)
        self.session_active = False

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await ws.send(json.dumps({"type": "ping"}))
            except WebSocketException:
                return

    async def say(self, text: str) -> Optional[str]:
        """Send an utterance. Stops current playback first (barge-in) and returns the request id."""
        text = (text or "").strip()
        if not text:
            return None
        ws = self._ws
        if ws is None or not self.ready:
            logger.warning(json.dumps({"event": "ws_not_ready"}))
            self._emit("error", error="Not connected; message not sent.")
            return None
        self.playback.stop()
        request_id = make_request_id()
        self.last_request_id = request_id
        self.history.append({"role": "user", "text": text})
        await ws.send(json.dumps({"type": "user_text", "text": text, "requestId": request_id}))
        return request_id

    def handle_message(self, raw: Any) -> Optional[str]:
        """Apply one server frame. Returns its type, or None when dropped."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(json.dumps({"event": "ws_bad_json"}))
            return None
        if not isinstance(msg, dict):
            return None
        mtype = msg.get("type")

        if mtype == "pong":
            return mtype
        if mtype == "ready":
            self.ready = True
            self.policy.reset()
            self._emit("ready")
            return mtype
        if mtype == "assistant_text":
            request_id = msg.get("requestId")
            if request_id and self.last_request_id and request_id != self.last_request_id:
                logger.info(json.dumps({
                    "event": "stale_reply_discarded",
                    "requestId": request_id,
                    "expected": self.last_request_id,
                }))
                return None
            reply = render_reply(str(msg.get("text") or ""))
            if reply.text:
                self.history.append({"role": "assistant", "text": reply.text})
                self.resources.extend(reply.youtube_links)
            self.quizzes.extend(reply.quizzes)
            audio = msg.get("audio")
            if audio:
                try:
                    self.playback.play(base64.b64decode(audio), str(msg.get("audioMime") or "audio/mpeg"))
                except ValueError:
                    logger.warning(json.dumps({"event": "bad_audio_payload", "requestId": request_id}))
            self._emit("assistant", text=reply.text, quizzes=reply.quizzes, links=reply.youtube_links)
            return mtype
        if mtype == "error":
            error = str(msg.get("error") or "")
            if not self.ready:
                # start was refused (bad key, no enrollment); reconnecting will not help
                self.refused = True
                self.session_active = False
            logger.warning(json.dumps({"event": "server_error", "error": error, "requestId": msg.get("requestId")}))
            self._emit("error", error=error, requestId=msg.get("requestId"))
            return mtype
        return None

    async def stop(self) -> None:
        """End the session on purpose: no reconnect follows."""
        self.manual_close = True
        self.session_active = False
        self.playback.stop()
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(json.dumps({"type": "stop"}))
            await ws.close()
        except WebSocketException:
            pass
