"""
Runtime configuration for the contact relay.

Settings are read from the environment (and a .env file, if present) once at
startup and handed to the components that need them, so the mailer and the
rate limiter never read os.environ themselves.

Environment variables
---------------------
SMTP_HOST             Relay hostname. Required for real delivery.
SMTP_PORT             Relay port (default: 587).
SMTP_SECURE           "true" for implicit TLS (port 465 style); otherwise
                      STARTTLS is used when the relay offers it.
SMTP_USER             Relay login. Required for real delivery.
SMTP_PASS             Relay password. Required for real delivery.
SMTP_FROM             Envelope/From address override (default: SMTP_USER).
SMTP_TIMEOUT          Socket timeout in seconds (default: 20).
CONTACT_EMAIL         Operator mailbox (default: SMTP_USER).
SITE_NAME             Label used in the message footer.
RATE_LIMIT_WINDOW_MS  Sliding window length (default: 900000, 15 minutes).
RATE_LIMIT_MAX        Submissions allowed per window (default: 5).
APP_ENV               Reported by the health endpoint (default: development).
"""

import logging
import os
from enum import Enum
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
DEFAULT_SMTP_TIMEOUT = 20.0
DEFAULT_SITE_NAME = "the website contact form"

DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_MAX_REQUESTS = 5


class MailMode(str, Enum):
    """How the mailer handles a submission."""
    RELAY = "relay"   # deliver through the configured SMTP relay
    TEST = "test"     # build the message, log it, skip delivery


class MailSettings(BaseModel):
    """SMTP relay settings. Missing host/user/password means test mode."""

    host: Optional[str] = None
    port: int = DEFAULT_SMTP_PORT
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    timeout: float = DEFAULT_SMTP_TIMEOUT
    site_name: str = DEFAULT_SITE_NAME

    def missing_fields(self) -> List[str]:
        """Names of the required environment variables that are not set."""
        required = {
            "SMTP_HOST": self.host,
            "SMTP_USER": self.user,
            "SMTP_PASS": self.password,
        }
        return [name for name, value in required.items() if not value]

    @property
    def mode(self) -> MailMode:
        return MailMode.TEST if self.missing_fields() else MailMode.RELAY

    @property
    def sender_address(self) -> str:
        return self.from_address or self.user or "contact@example.com"

    @property
    def recipient_address(self) -> str:
        return self.to_address or self.user or "info@example.com"


class RateLimitSettings(BaseModel):
    window_ms: int = DEFAULT_WINDOW_MS
    max_requests: int = DEFAULT_MAX_REQUESTS


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def load_mail_settings() -> MailSettings:
    """Build MailSettings from the current environment."""
    return MailSettings(
        host=_env_str("SMTP_HOST"),
        port=_env_int("SMTP_PORT", DEFAULT_SMTP_PORT),
        secure=os.getenv("SMTP_SECURE", "").strip().lower() == "true",
        user=_env_str("SMTP_USER"),
        password=_env_str("SMTP_PASS"),
        from_address=_env_str("SMTP_FROM"),
        to_address=_env_str("CONTACT_EMAIL"),
        timeout=_env_float("SMTP_TIMEOUT", DEFAULT_SMTP_TIMEOUT),
        site_name=_env_str("SITE_NAME") or DEFAULT_SITE_NAME,
    )


def load_rate_limit_settings() -> RateLimitSettings:
    """Build RateLimitSettings from the current environment."""
    return RateLimitSettings(
        window_ms=_env_int("RATE_LIMIT_WINDOW_MS", DEFAULT_WINDOW_MS),
        max_requests=_env_int("RATE_LIMIT_MAX", DEFAULT_MAX_REQUESTS),
    )


def get_app_env() -> str:
    return os.getenv("APP_ENV", "development")
