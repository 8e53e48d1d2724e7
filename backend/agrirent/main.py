import re as _re
import time as _time
import uuid as _uuid
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm.exc import StaleDataError
from starlette.responses import Response as StarletteResponse

from agrirent.admin.routes import router as admin_router
from agrirent.bookings.routes import router as bookings_router
from agrirent.config import settings
from agrirent.database import async_session
from agrirent.errors import BookingError, ErrorCode
from agrirent.middleware import SecurityHeadersMiddleware
from agrirent.notifications.routes import router as notifications_router
from agrirent.payments.routes import router as payments_router
from agrirent.realtime.routes import router as realtime_router
from agrirent.reviews.routes import router as reviews_router
from agrirent.services.events import EventEmitter
from agrirent.services.otp import OTPAuthority
from agrirent.services.scheduler import scheduler, start_scheduler, stop_scheduler
from agrirent.services.stripe_service import StripeServiceError
from agrirent.utils.rate_limit import limiter

# Configure structlog: JSON in production, console in development
processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]
if settings.is_production:
    processors.append(structlog.processors.JSONRenderer())
else:
    processors.append(structlog.dev.ConsoleRenderer())

structlog.configure(
    processors=processors,
    wrapper_class=structlog.make_filtering_bound_logger(0),
)

logger = structlog.get_logger()

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        environment=settings.APP_ENV,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("agrirent_startup", env=settings.APP_ENV)

    if not settings.OTP_HMAC_KEY:
        logger.warning(
            "otp_hmac_key_empty",
            message="OTP_HMAC_KEY is not set; confirming bookings will fail until it is configured.",
        )
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning(
            "stripe_webhook_secret_empty",
            message="STRIPE_WEBHOOK_SECRET is not set; the Stripe webhook endpoint is disabled.",
        )

    start_scheduler(app.state.otp_authority, app.state.event_emitter)
    yield
    stop_scheduler()
    logger.info("agrirent_shutdown")


app = FastAPI(
    title="AgriRent API",
    description="Farm machinery rental: bookings verified on site with one-time codes",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# Process-wide singletons, injected into routes through dependencies
app.state.otp_authority = OTPAuthority()
app.state.event_emitter = EventEmitter()

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_ERROR_STATUS = {
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.OTP_INVALID: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.SYSTEM: 500,
}


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    status_code = _ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error("booking_system_error", path=request.url.path, detail=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code.value},
    )


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("booking_version_conflict", path=request.url.path)
    return JSONResponse(
        status_code=409,
        content={"detail": "Booking was modified concurrently", "code": ErrorCode.INVALID_STATE.value},
    )


@app.exception_handler(StripeServiceError)
async def stripe_error_handler(request: Request, exc: StripeServiceError):
    logger.error("payment_gateway_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=502,
        content={"detail": "Payment gateway unavailable", "code": ErrorCode.SYSTEM.value},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions and return a safe 500 response outside development."""
    logger.exception("unhandled_exception", path=request.url.path)
    if settings.APP_ENV != "development":
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": ErrorCode.SYSTEM.value},
        )
    raise exc


# Middleware is LIFO: CORS is added first so it runs last.
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Authorization", "Content-Type"],
    )
    if not settings.cors_origins_list:
        logger.warning("cors_origins_empty_in_production", app_env=settings.APP_ENV)
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8081", "http://localhost:19006"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware, is_production=settings.is_production)


_REQUEST_ID_RE = _re.compile(r"^[a-zA-Z0-9\-]{1,64}$")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a request ID and measure duration for every request."""
    # Client-supplied ids end up in logs, so only a safe charset is echoed back
    client_id = request.headers.get("X-Request-ID")
    request_id = client_id if client_id and _REQUEST_ID_RE.match(client_id) else str(_uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    start = _time.monotonic()
    try:
        response = await call_next(request)
        duration_ms = (_time.monotonic() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        if duration_ms > 1000:
            logger.warning(
                "slow_request",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                status_code=response.status_code,
            )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


# Registered once at import; the default instrumentator metrics choke on
# non-numeric Content-Length headers.
_HTTP_REQUESTS = Counter(
    "agrirent_http_requests_total", "Total HTTP requests",
    ["method", "status", "handler"],
)
_HTTP_LATENCY = Histogram(
    "agrirent_http_request_duration_seconds", "Request latency",
    ["method", "handler"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)


def _safe_metrics(info) -> None:
    _HTTP_REQUESTS.labels(info.method, info.modified_status, info.modified_handler).inc()
    _HTTP_LATENCY.labels(info.method, info.modified_handler).observe(info.modified_duration)


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/health", "/metrics"],
).add(_safe_metrics).instrument(app)


@app.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request):
    """Prometheus metrics endpoint (protected by API key)."""
    if settings.is_production and not settings.METRICS_API_KEY:
        raise HTTPException(status_code=503, detail="Metrics not available")

    if settings.METRICS_API_KEY:
        api_key = request.headers.get("x-metrics-key", "")
        if api_key != settings.METRICS_API_KEY:
            raise HTTPException(status_code=403, detail="Invalid metrics API key")

    return StarletteResponse(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(bookings_router, prefix="/bookings", tags=["bookings"])
app.include_router(payments_router, prefix="/payments", tags=["payments"])
app.include_router(reviews_router, prefix="/reviews", tags=["reviews"])
app.include_router(notifications_router, prefix="/notifications", tags=["notifications"])
app.include_router(admin_router)
app.include_router(realtime_router, tags=["realtime"])


@app.get("/health")
@limiter.limit("60/minute")
async def health_check(request: Request):
    """Health check with database connectivity and scheduler state."""
    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("health_database_unreachable")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected"},
        )

    return {
        "status": "ok",
        "database": "connected",
        "scheduler": "running" if scheduler.running else "stopped",
        "active_otps": len(request.app.state.otp_authority),
    }
