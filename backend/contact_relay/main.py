"""
Contact Relay API
FastAPI application that forwards website contact form submissions to an
operator mailbox.
"""

import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from contact_relay.config import (
    MailMode,
    MailSettings,
    get_app_env,
    load_mail_settings,
    load_rate_limit_settings,
)
from contact_relay.routers import contact
from contact_relay.services.rate_limiter import RateLimiter

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Read from the CORS_ORIGINS environment variable as a comma-separated
    list, e.g.:
        CORS_ORIGINS=https://example.com,https://www.example.com

    When unset or empty, every origin is allowed ("*"): the contact form is
    a public endpoint that is usually embedded in a separately hosted site.

    Duplicates are removed while preserving order.
    """
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if not cors_env:
        return ["*"]

    # Deduplicate while preserving order
    seen: set = set()
    origins: List[str] = []
    for origin in (o.strip() for o in cors_env.split(",")):
        if origin and origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins or ["*"]


def _log_mail_configuration(settings: MailSettings) -> None:
    if settings.mode is MailMode.RELAY:
        logger.info(
            f"SMTP relay configured: {settings.host}:{settings.port} "
            f"(secure={settings.secure}), notifications go to {settings.recipient_address}"
        )
    else:
        logger.warning(
            "SMTP not configured, running in TEST MODE (missing: %s). "
            "Submissions will be logged, not delivered.",
            ", ".join(settings.missing_fields()),
        )


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        content = {"success": False, "errors": ["Endpoint not found"]}
    elif exc.status_code == 405:
        content = {"success": False, "error": "Method not allowed"}
    else:
        content = {"success": False, "errors": [str(exc.detail)]}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies (not a JSON object, non-string fields) are a 400, like rule violations."""
    logger.info("Rejected malformed request body on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=400,
        content={"success": False, "errors": ["Invalid request body"]},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "errors": ["Internal server error"]},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    mail_settings: Optional[MailSettings] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the application.

    Mail settings and the rate limiter are created once here and shared by
    every request through app.state. Tests pass their own instances.
    """
    if mail_settings is None:
        mail_settings = load_mail_settings()
    if rate_limiter is None:
        limits = load_rate_limit_settings()
        rate_limiter = RateLimiter(window_ms=limits.window_ms, max_requests=limits.max_requests)

    app = FastAPI(
        title="Contact Relay API",
        description="Validates contact form submissions and forwards them by email",
        version=VERSION,
    )
    app.state.mail_settings = mail_settings
    app.state.rate_limiter = rate_limiter

    # CORS origins are resolved at startup from environment
    origins = get_cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Include routers
    app.include_router(contact.router, prefix="/api/contact", tags=["contact"])

    @app.on_event("startup")
    async def log_startup_configuration() -> None:
        """
        Log where the API listens and whether mail goes out for real.

        The port shown is taken from the ``HOST_PORT`` environment variable
        (default 8000).
        """
        host_port = os.getenv("HOST_PORT", "8000")
        logger.info(
            "Contact Relay API running at http://localhost:%s\n"
            "  Contact endpoint: http://localhost:%s/api/contact\n"
            "  Health check:     http://localhost:%s/api/health",
            host_port, host_port, host_port,
        )
        _log_mail_configuration(app.state.mail_settings)

    @app.get("/")
    async def root():
        return {"message": "Contact Relay API", "version": VERSION}

    @app.get("/api/health")
    async def health():
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": get_app_env(),
            "mail_mode": app.state.mail_settings.mode.value,
        }

    return app


app = create_app()
