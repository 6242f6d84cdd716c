import json
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from praxis import config

logger = config.configure_logger("praxis.ai.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-Id, stores it on request.state and echoes it.

    ``request.state.request_id_supplied`` tells handlers whether the caller sent one.
    Emits one JSON line per request with method, path, status and latency_ms.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.time()
        supplied = (request.headers.get("X-Request-Id") or "").strip()
        req_id = supplied or str(uuid.uuid4())
        request.state.request_id = req_id
        request.state.request_id_supplied = bool(supplied)

        response = await call_next(request)
        response.headers["X-Request-Id"] = req_id

        logger.info(json.dumps({
            "ts": int(time.time() * 1000),
            "level": "info",
            "requestId": req_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": int((time.time() - start) * 1000),
        }))
        return response
