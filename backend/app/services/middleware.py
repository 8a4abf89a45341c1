"""Request tracing middleware for the inspection API."""
import re
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("inspection-api.middleware")

# Health checks and metric scrapers hit these every few seconds.
QUIET_PATHS = {"/health", "/metrics"}

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9\-]{8,64}$")


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    return incoming if _REQUEST_ID_RE.match(incoming) else str(uuid.uuid4())


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an X-Request-ID (the caller's when it looks sane,
    otherwise a fresh uuid4), returns X-Process-Time in milliseconds and emits
    one structured log line per request. Server errors log at WARNING so a
    failing upload or analysis stands out in the JSON stream.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path in QUIET_PATHS:
            return response

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                "request_id": request_id,
                "duration_ms": duration_ms,
                "http_method": request.method,
                "http_path": request.url.path,
                "http_status": response.status_code,
            },
        )
        return response
