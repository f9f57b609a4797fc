"""
FastAPI application entry point.

Configures the application with routes, middleware, and settings.
"""
import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from backend.api.routes import formulas
from backend.config import get_settings
from backend.exceptions import FormulaEngineError
from backend.middleware.logging import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    configure_logging,
    redact_sensitive_data,
)

settings = get_settings()

# Initialize Sentry for error tracking (must be done early)
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            LoggingIntegration(level=None, event_level="ERROR"),
        ],
        # Don't send PII by default
        send_default_pii=False,
        before_send=lambda event, hint: _filter_sensitive_data(event),
    )


def _filter_sensitive_data(event: dict) -> dict:
    """Filter sensitive data from Sentry events before sending."""
    if "request" in event and isinstance(event["request"].get("data"), dict):
        event["request"]["data"] = redact_sensitive_data(event["request"]["data"])
    if "extra" in event:
        event["extra"] = redact_sensitive_data(event["extra"])
    return event


configure_logging(settings.log_level, json_logs=not settings.debug)

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Formula Engine API",
    description="""
## Visual Formula Engine

Compiles formula canvases built from extracted document fields, constants and
operators into expressions, orders them by dependency, and calculates typed,
confidence-scored results per document.

### Pipeline

1. **Compile**: canvas -> one expression per Output node, with diagnostics
2. **Order**: outputs that feed other outputs run first
3. **Calculate**: per document, with per-output failure isolation
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Formulas", "description": "Canvas compilation and calculation"},
        {"name": "Health", "description": "Health checks"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-ID"],
)

# Add logging middleware (order matters: correlation ID first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

# Add GZip compression for responses > 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.include_router(formulas.router, prefix="/api/v1", tags=["Formulas"])


@app.exception_handler(FormulaEngineError)
async def formula_engine_exception_handler(request: Request, exc: FormulaEngineError):
    """Handle all formula engine exceptions."""
    logger.error(
        "formula_engine_error",
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details,
        path=str(request.url.path),
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with consistent format."""
    sentry_sdk.capture_exception(exc)

    logger.exception(
        "unhandled_error",
        error_type=type(exc).__name__,
        message=str(exc),
        path=str(request.url.path),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "error_code": FormulaEngineError.error_code,
            "message": "An unexpected error occurred. Please try again.",
            "details": {"error_type": type(exc).__name__} if settings.debug else {},
        },
    )


@app.on_event("startup")
async def startup_event() -> None:
    """Log startup configuration."""
    logger.info(
        "Starting Formula Engine API",
        debug=settings.debug,
        round_mode=settings.round_mode,
        unresolved_variable_policy=settings.unresolved_variable_policy,
    )
    if not settings.sentry_dsn:
        logger.warning("Sentry error tracking not configured (SENTRY_DSN not set)")


@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}
