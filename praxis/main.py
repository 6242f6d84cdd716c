import asyncio
import json
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from dotenv import load_dotenv
from fastapi import Body, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

# Load .env outside pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from praxis import calendar as cal
from praxis import config
from praxis.gateway import TutorGateway
from praxis.locks import EventLockStore
from praxis.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL, TURNS_TOTAL
from praxis.middleware.request_id import RequestIdMiddleware
from praxis.providers.base import ProviderError
from praxis.providers.factory import get_chat_client, get_search_client, get_speech_client
from praxis.scope import ScopeError, fetch_student_scope, normalize_email
from praxis.sessions import Session, SessionRegistry, clean_history

logger = config.configure_logger("praxis.ai.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    chat_client = get_chat_client()
    speech_client = get_speech_client()
    search_client = get_search_client()
    app.state.sessions = SessionRegistry()
    app.state.gateway = TutorGateway(
        registry=app.state.sessions,
        chat_client=chat_client,
        speech_client=speech_client,
        scope_resolver=fetch_student_scope,
        search_client=search_client,
    )
    app.state.request_locks = EventLockStore(ttl=config.dedupe_ttl_seconds())
    app.state.calendar_service_factory = cal.calendar_service
    logger.info(json.dumps({
        "event": "gateway_config",
        "chatProvider": chat_client.provider_name,
        "chatModel": chat_client.model,
        "ttsProvider": speech_client.provider_name,
        "searchProvider": search_client.provider_name if search_client else None,
        "historyWindow": config.history_window(),
        "requireLmsKey": config.require_lms_key(),
    }))
    try:
        yield
    finally:
        gateway = getattr(app.state, "gateway", None)
        if gateway is not None:
            await gateway.shutdown()


app = FastAPI(
    title="Praxis Tutor Gateway",
    description="Voice/text tutoring gateway scoped to each student's enrolled curriculum.",
    version="0.1.0",
)
app.router.lifespan_context = lifespan
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config._env_str("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)


@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    path = request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    finally:
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=f"{status_code // 100}xx").inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/service-metrics", tags=["meta"], description="Live session counts.")
async def service_metrics(request: Request):
    return request.app.state.gateway.stats()


# ---------------------------------------------------------------------------
# Tutoring
# ---------------------------------------------------------------------------
@app.websocket("/ws")
async def tutor_socket(websocket: WebSocket):
    await websocket.accept()
    gateway: TutorGateway = websocket.app.state.gateway
    conn = gateway.open_connection(websocket.send_json)
    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", "replace")
            if not await gateway.handle_message(conn, raw):
                break
    except WebSocketDisconnect:
        pass
    finally:
        await gateway.close_connection(conn)
        logger.info(json.dumps({"event": "ws_disconnected", "connectionId": conn.connection_id}))
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:
                pass


@app.post("/api/chat", tags=["chat"], description="Single-turn chat for non-WebSocket clients.")
async def api_chat(
    request: Request,
    body: Dict[str, Any] = Body(..., description="{ student_email, lmsKey?, message, history? }"),
):
    email = normalize_email(body.get("student_email"))
    message = str(body.get("message") or "").strip()
    if not email or not message:
        return JSONResponse({"error": "student_email and message are required."}, status_code=400)

    gateway: TutorGateway = request.app.state.gateway
    if not gateway.check_lms_key(body.get("lmsKey")):
        return JSONResponse({"error": "Invalid LMS key."}, status_code=403)

    request_id = request.state.request_id
    if request.state.request_id_supplied and not request.app.state.request_locks.acquire(request_id):
        logger.info(json.dumps({"event": "chat_duplicate_request", "requestId": request_id}))
        return JSONResponse({"error": "Duplicate request."}, status_code=429)

    try:
        scope = await gateway.resolve_scope(email)
    except ScopeError as e:
        return JSONResponse({"error": str(e)}, status_code=403)

    session = Session(session_id=request_id, scope=scope, history=clean_history(body.get("history"), model_role=True))
    try:
        text = await gateway.compose_reply(session, message, request_id)
    except ProviderError as e:
        logger.error(json.dumps({"event": "chat_failed", "requestId": request_id, "error": str(e)[:256]}))
        TURNS_TOTAL.labels(transport="http", outcome="error").inc()
        return JSONResponse({"error": str(e) or "LLM request failed."}, status_code=502)
    TURNS_TOTAL.labels(transport="http", outcome="ok").inc()
    return {"text": text}


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------
def _calendar_authorized(request: Request) -> bool:
    expected = config.lms_api_key()
    return bool(expected) and request.headers.get("x-api-key") == expected


async def _calendar_service(request: Request):
    return await asyncio.to_thread(request.app.state.calendar_service_factory)


@app.get("/calendar-events", tags=["calendar"], description="Upcoming events where the student is an attendee.")
async def calendar_events(
    request: Request,
    email: str = Query("", description="Student email"),
    calendarId: str = Query("", description="Google Calendar id for the course"),
):
    if not _calendar_authorized(request):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if not email or not calendarId:
        return JSONResponse({"error": "Missing required query params: email, calendarId"}, status_code=400)
    try:
        service = await _calendar_service(request)
        events = await asyncio.to_thread(cal.get_events_for_student, service, calendarId, normalize_email(email))
    except Exception as e:
        logger.error(json.dumps({"event": "calendar_events_failed", "calendarId": calendarId, "error": str(e)[:256]}))
        return JSONResponse({"error": "Failed to fetch events", "details": str(e)}, status_code=500)
    return {"events": [cal.format_event(ev) for ev in events]}


@app.post("/add-students-to-event", tags=["calendar"], description="Invite students to a cohort event.")
async def add_students_to_event(
    request: Request,
    body: Dict[str, Any] = Body(..., description="{ calendarId, eventId, emails[] }"),
):
    if not _calendar_authorized(request):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    calendar_id = body.get("calendarId")
    event_id = body.get("eventId")
    raw_emails = body.get("emails")
    emails: List[str] = []
    if isinstance(raw_emails, list):
        emails = [e.strip() for e in raw_emails if isinstance(e, str) and e.strip()]
    if not calendar_id or not event_id or not emails:
        return JSONResponse({"error": "calendarId, eventId and a non-empty emails list are required."}, status_code=400)
    try:
        service = await _calendar_service(request)
        event = await asyncio.to_thread(cal.add_students_to_event, service, calendar_id, event_id, emails)
    except Exception as e:
        logger.error(json.dumps({"event": "calendar_patch_failed", "eventId": event_id, "error": str(e)[:256]}))
        return JSONResponse({"error": "Failed to add students", "details": str(e)}, status_code=500)
    return {"success": True, "eventId": (event or {}).get("id", event_id), "added": len(emails)}


@app.delete("/remove-event", tags=["calendar"], description="Delete an event from a course calendar.")
async def remove_event(
    request: Request,
    calendarId: str = Query(""),
    eventId: str = Query(""),
):
    if not _calendar_authorized(request):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    if not calendarId or not eventId:
        return JSONResponse({"error": "Missing required query params: calendarId, eventId"}, status_code=400)
    try:
        service = await _calendar_service(request)
        return await asyncio.to_thread(cal.remove_event, service, calendarId, eventId)
    except cal.CalendarError as e:
        return JSONResponse({"error": str(e)}, status_code=500)
    except Exception as e:
        logger.error(json.dumps({"event": "calendar_service_failed", "error": str(e)[:256]}))
        return JSONResponse({"error": "Error removing event.", "details": str(e)}, status_code=500)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema["tags"] = [
        {"name": "meta", "description": "Service metadata and liveness"},
        {"name": "chat", "description": "Tutoring turns over HTTP (WebSocket clients use /ws)"},
        {"name": "calendar", "description": "Cohort events on Google Calendar"},
    ]
    openapi_schema["servers"] = [
        {"url": "http://localhost:8080", "description": "Local dev"}
    ]
    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[assignment]
