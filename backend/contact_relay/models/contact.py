"""
Pydantic models for the contact form pipeline.

Models:
  ContactSubmission      - request body for POST /api/contact
  SanitizedSubmission    - trimmed and HTML-escaped copy of a submission
  DispatchErrorCategory  - closed set of mail delivery failure categories
  DispatchOutcome        - result of handing a submission to the mailer
  ContactResponse        - API response body
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ContactSubmission(BaseModel):
    """
    Contact form fields as posted by the browser.

    Every field is optional at the parsing stage so that missing values are
    reported by the form validator alongside the other rule violations,
    rather than short-circuited by a schema error. Unknown keys (honeypots,
    tracking fields) are ignored.
    """
    model_config = {"extra": "ignore"}

    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None


class SanitizedSubmission(BaseModel):
    """
    Submission safe to interpolate into an HTML email body.

    name, subject and message are trimmed and escaped; email is trimmed only
    so it stays usable as a Reply-To address.
    """
    name: str
    email: str
    subject: str
    message: str


# ---------------------------------------------------------------------------
# Dispatch outcome
# ---------------------------------------------------------------------------

class DispatchErrorCategory(str, Enum):
    AUTHENTICATION_FAILED = "authentication_failed"
    CONNECTION_FAILED = "connection_failed"
    TIMED_OUT = "timed_out"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN = "unknown"

    @property
    def user_message(self) -> str:
        return _CATEGORY_MESSAGES[self]


_CATEGORY_MESSAGES = {
    DispatchErrorCategory.AUTHENTICATION_FAILED: "Email authentication failed",
    DispatchErrorCategory.CONNECTION_FAILED: "Failed to connect to email server",
    DispatchErrorCategory.TIMED_OUT: "Email server timeout",
    DispatchErrorCategory.CONFIGURATION_ERROR: "Email service configuration error",
    DispatchErrorCategory.UNKNOWN: "Failed to send email",
}


class DispatchStatus(str, Enum):
    DELIVERED = "delivered"
    SIMULATED = "simulated"
    FAILED = "failed"


class DispatchOutcome(BaseModel):
    """
    Tagged result of a dispatch attempt.

    Exactly one shape is valid per status:
      delivered  - message_id is the Message-ID of the sent message
      simulated  - no extra fields (test mode, nothing left the process)
      failed     - error_category says why, never the raw transport error
    """
    status: DispatchStatus
    message_id: Optional[str] = None
    error_category: Optional[DispatchErrorCategory] = None

    @classmethod
    def delivered(cls, message_id: str) -> "DispatchOutcome":
        return cls(status=DispatchStatus.DELIVERED, message_id=message_id)

    @classmethod
    def simulated(cls) -> "DispatchOutcome":
        return cls(status=DispatchStatus.SIMULATED)

    @classmethod
    def failed(cls, category: DispatchErrorCategory) -> "DispatchOutcome":
        return cls(status=DispatchStatus.FAILED, error_category=category)

    @property
    def ok(self) -> bool:
        return self.status != DispatchStatus.FAILED


# ---------------------------------------------------------------------------
# Response body
# ---------------------------------------------------------------------------

class ContactResponse(BaseModel):
    """
    Response body for the contact endpoint.

    Serialize with exclude_none=True: each status uses a different subset
    (success/message/messageId, success/errors, or success/error).
    """
    success: bool
    message: Optional[str] = None
    messageId: Optional[str] = None
    error: Optional[str] = None
    errors: Optional[List[str]] = None
