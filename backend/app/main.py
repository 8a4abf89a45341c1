"""
Inspection Checkout API
FastAPI backend for property check-in / check-out inspections: vision-model
condition assessment with a tolerant response parser, and batch photo upload
to Supabase Storage with bounded concurrency and automatic retries.
"""
import os
import logging
import time
import collections
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Load .env before app.config reads the environment.
load_dotenv()

from app import config  # noqa: E402
from app.api.deps import close_services  # noqa: E402
from app.services.logging_config import setup_logging  # noqa: E402
from app.services.middleware import RequestTimingMiddleware  # noqa: E402
from app.services.perf_monitor import tracker as perf_tracker  # noqa: E402

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("inspection-api")

# Record process start time for uptime calculation
_PROCESS_START = time.monotonic()

# Startup validation
for var in ["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var}, photo uploads will fail")
if not os.getenv("GEMINI_API_KEY"):
    logger.warning("MISSING env var: GEMINI_API_KEY, image analysis will fail")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Starting inspection API (primary model {config.LLM_PRIMARY_MODEL}, "
        f"bucket {config.STORAGE_BUCKET})"
    )
    yield
    await close_services()


app = FastAPI(
    title="Inspection Checkout API",
    version="1.0.0",
    description="AI-assisted property inspection: condition analysis and photo storage",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Rate Limiting Middleware
# ---------------------------------------------------------------------------
class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    In-memory sliding-window rate limiter.
    Buckets:
      - /api/analysis/process             : 10 req/min per IP
      - upload endpoints                  : 20 req/min per IP
      - everything else                   : 120 req/min per IP
    """
    WINDOW_SECONDS = 60

    def __init__(self, app):
        super().__init__(app)
        # {bucket_key: deque of timestamps}
        self._windows: dict = collections.defaultdict(collections.deque)
        self._last_sweep = time.monotonic()

    def _prune(self, window: collections.deque, now: float) -> None:
        while window and now - window[0] > self.WINDOW_SECONDS:
            window.popleft()

    def _sweep(self, now: float) -> None:
        """Drop buckets of clients that have gone quiet for a whole window."""
        for key in list(self._windows):
            self._prune(self._windows[key], now)
            if not self._windows[key]:
                del self._windows[key]
        self._last_sweep = now

    def _get_limit(self, path: str) -> int:
        if path == "/api/analysis/process":
            return 10
        if path.startswith("/api/uploads"):
            return 20
        return 120

    async def dispatch(self, request: Request, call_next):
        ip = request.client.host if request.client else "unknown"
        path = request.url.path
        limit = self._get_limit(path)
        bucket = f"{ip}:{path if limit <= 20 else 'general'}"
        now = time.monotonic()
        if now - self._last_sweep > self.WINDOW_SECONDS:
            self._sweep(now)
        window = self._windows[bucket]
        self._prune(window, now)
        if len(window) >= limit:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests. Please slow down."},
                headers={"Retry-After": "60"},
            )
        window.append(now)
        return await call_next(request)


# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# ---------------------------------------------------------------------------
# CORS: restricted to allowed origins from env
# ---------------------------------------------------------------------------
_cors_default = "http://localhost:3000,http://localhost:5173,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RateLimitMiddleware)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

# Routers
from app.api.analysis_routes import router as analysis_router, usage_router  # noqa: E402
from app.api.upload_routes import router as upload_router  # noqa: E402

app.include_router(analysis_router)
app.include_router(upload_router)
app.include_router(usage_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "llm_primary": config.LLM_PRIMARY_MODEL,
        "llm_fallback": config.LLM_FALLBACK_MODEL,
        "storage_configured": bool(config.SUPABASE_URL and config.SUPABASE_SERVICE_ROLE_KEY),
        "storage_bucket": config.STORAGE_BUCKET,
    }


@app.get("/metrics")
async def metrics():
    """
    Performance metrics endpoint.

    Returns analysis throughput, parse-method mix, error counts by kind and
    batch upload totals, sourced from the in-process ServiceMetricsTracker.
    """
    return {
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        **perf_tracker.get_metrics(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=True)
