"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from dentacare.core.config import settings
from dentacare.core.errors import DentacareError, ErrorCode
from dentacare.core.structured_logging import build_log_context
from dentacare.db.session import engine
from dentacare.schemas.common import error_body

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests for performance monitoring
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from dentacare.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Dentacare API",
    description="Virtual dental appointments: booking, payment and video rooms",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)


# ============================================================================
# Error Envelope
# ============================================================================

_HTTP_REASONS = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHENTICATED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.INVALID_TRANSITION,
    429: ErrorCode.RATE_LIMITED,
}


@app.exception_handler(DentacareError)
async def dentacare_error_handler(request: Request, exc: DentacareError):
    status_code = exc.http_status
    log_context = build_log_context(route=request.url.path, method=request.method)
    if status_code >= 500:
        logger.error("%s: %s", exc.code.value, exc.message, extra=log_context)
    else:
        logger.info("%s: %s", exc.code.value, exc.message, extra=log_context)
    return JSONResponse(
        status_code=status_code,
        content=error_body(status_code, exc.message, exc.to_details()),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    reason = _HTTP_REASONS.get(exc.status_code, ErrorCode.INTERNAL)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, str(exc.detail), [{"reason": reason.value}]),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [{"reason": ErrorCode.VALIDATION_ERROR.value}]
    for error in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in error.get("loc", ())),
                "message": error.get("msg", "Invalid value"),
            }
        )
    logger.info("Validation error for %s", request.url.path)
    return JSONResponse(status_code=400, content=error_body(400, "Validation error", details))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit exceeded for %s", request.url.path)
    return JSONResponse(
        status_code=429,
        content=error_body(
            429,
            f"Rate limit exceeded: {exc.detail}",
            [{"reason": ErrorCode.RATE_LIMITED.value}],
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error: %s",
        type(exc).__name__,
        extra=build_log_context(route=request.url.path, method=request.method),
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body(500, "Internal server error", [{"reason": ErrorCode.INTERNAL.value}]),
    )


# ============================================================================
# Routers
# ============================================================================

from dentacare.routers import admin, appointments, internal, payments, redeem_codes, video

app.include_router(appointments.router, prefix="/appointments", tags=["appointments"])
app.include_router(payments.router, prefix="/payment", tags=["payments"])
app.include_router(video.router, prefix="/video", tags=["video"])
app.include_router(redeem_codes.router, prefix="/redeem-codes", tags=["redeem-codes"])

# Admin endpoints (router already has /admin prefix)
app.include_router(admin.router)

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
