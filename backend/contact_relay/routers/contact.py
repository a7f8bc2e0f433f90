"""
Contact form router.

Runs a submission through the pipeline, in order:

  rate limit  ->  validate  ->  sanitize  ->  dispatch (deliver or simulate)

Throttled and invalid submissions stop early. The router owns the HTTP
details: caller key resolution, status codes and the response body shape.

Endpoints:
  POST /   - submit the contact form (mounted at /api/contact)
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from contact_relay.config import MailSettings
from contact_relay.models.contact import (
    ContactResponse,
    ContactSubmission,
    DispatchStatus,
)
from contact_relay.services.form_validation import sanitize_submission, validate_submission
from contact_relay.services.mailer import dispatch
from contact_relay.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNKNOWN_CALLER = "unknown"

RATE_LIMITED_ERROR = "Too many requests. Please wait before sending another message."
SEND_FAILED_ERROR = "Failed to send message. Please try again later."
SENT_MESSAGE = "Message sent successfully!"
SIMULATED_MESSAGE = "Message sent successfully! (TEST MODE - Check server logs)"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_rate_limiter(request: Request) -> RateLimiter:
    """The process-wide limiter created by create_app()."""
    return request.app.state.rate_limiter


def get_mail_settings(request: Request) -> MailSettings:
    """Mail settings resolved once at startup by create_app()."""
    return request.app.state.mail_settings


def resolve_caller_key(request: Request) -> str:
    """
    Identify the submitter for rate limiting.

    Priority:
      1. First address in X-Forwarded-For (the original client behind proxies)
      2. X-Real-IP
      3. Transport peer address
      4. "unknown" - every unidentifiable caller shares this one bucket
    """
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop

    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_CALLER


def _respond(status_code: int, body: ContactResponse, headers: dict = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=ContactResponse,
    response_model_exclude_none=True,
    responses={
        200: {
            "description": "Message delivered (or logged, in test mode)",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "message": "Message sent successfully!",
                        "messageId": "<171234567890.12345.678@example.com>",
                    }
                }
            },
        },
        400: {"description": "Validation failed; errors lists every problem"},
        429: {"description": "Too many submissions from this caller"},
        500: {"description": "Mail delivery failed"},
    },
)
async def submit_contact(
    submission: ContactSubmission,
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    mail_settings: MailSettings = Depends(get_mail_settings),
):
    """
    Accept a contact form submission and forward it to the operator mailbox.

    Rate limited per caller (default 5 per 15 minutes). When SMTP is not
    configured the message is built and logged but not sent, and the
    response says so.
    """
    caller_key = resolve_caller_key(request)

    if not limiter.check(caller_key):
        retry_after = limiter.retry_after(caller_key)
        return _respond(
            429,
            ContactResponse(success=False, error=RATE_LIMITED_ERROR),
            headers={"Retry-After": str(retry_after)},
        )

    errors = validate_submission(submission)
    if errors:
        logger.info(f"Contact form rejected for {caller_key}: {errors}")
        return _respond(400, ContactResponse(success=False, errors=errors))

    try:
        sanitized = sanitize_submission(submission)
        logger.info(
            f"Contact form submitted by {caller_key}: "
            f"name={sanitized.name}, subject={sanitized.subject}"
        )
        # smtplib blocks; keep it off the event loop
        outcome = await run_in_threadpool(dispatch, sanitized, mail_settings)
    except Exception:
        logger.exception(f"Contact form processing failed for {caller_key}")
        return _respond(500, ContactResponse(success=False, errors=[SEND_FAILED_ERROR]))

    if not outcome.ok:
        return _respond(
            500,
            ContactResponse(success=False, errors=[outcome.error_category.user_message]),
        )

    if outcome.status == DispatchStatus.SIMULATED:
        return _respond(200, ContactResponse(success=True, message=SIMULATED_MESSAGE))

    return _respond(
        200,
        ContactResponse(success=True, message=SENT_MESSAGE, messageId=outcome.message_id),
    )
