"""
Contact form validation and HTML sanitization.

validate_submission reports every rule violation at once (it never stops at
the first failure). sanitize_submission prepares values for interpolation
into the HTML notification email.
"""

import re
from typing import List, Optional

from contact_relay.models.contact import ContactSubmission, SanitizedSubmission

MIN_NAME_LENGTH = 2
MIN_SUBJECT_LENGTH = 5
MIN_MESSAGE_LENGTH = 10

NAME_ERROR = "Name must be at least 2 characters long"
EMAIL_ERROR = "Please provide a valid email address"
SUBJECT_ERROR = "Subject must be at least 5 characters long"
MESSAGE_ERROR = "Message must be at least 10 characters long"

# Shape check only: something@something.something, no whitespace, one "@".
# Deliberately permissive; deliverability is not checked.
_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")

# Order matters: "&" first so the entities added below are not re-escaped.
_HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#39;"),
)


def _trimmed_length(value: Optional[str]) -> int:
    return len(value.strip()) if value else 0


def is_valid_email(value: Optional[str]) -> bool:
    if not value:
        return False
    return _EMAIL_RE.fullmatch(value) is not None


def validate_submission(fields: ContactSubmission) -> List[str]:
    """
    Check a submission against the contact form rules.

    Returns a list of human-readable errors in field order (name, email,
    subject, message). An empty list means the submission is valid.
    """
    errors: List[str] = []

    if _trimmed_length(fields.name) < MIN_NAME_LENGTH:
        errors.append(NAME_ERROR)

    if not is_valid_email(fields.email):
        errors.append(EMAIL_ERROR)

    if _trimmed_length(fields.subject) < MIN_SUBJECT_LENGTH:
        errors.append(SUBJECT_ERROR)

    if _trimmed_length(fields.message) < MIN_MESSAGE_LENGTH:
        errors.append(MESSAGE_ERROR)

    return errors


def escape_html(text: str) -> str:
    """
    Escape & < > " ' as HTML entities.

    Single pass only: escaping already-escaped text escapes the "&" of each
    entity again ("&lt;" becomes "&amp;lt;").
    """
    for char, entity in _HTML_ESCAPES:
        text = text.replace(char, entity)
    return text


def sanitize_submission(fields: ContactSubmission) -> SanitizedSubmission:
    """
    Trim every field and HTML-escape name, subject and message.

    Call only after validate_submission returned no errors.
    """
    return SanitizedSubmission(
        name=escape_html((fields.name or "").strip()),
        email=(fields.email or "").strip(),
        subject=escape_html((fields.subject or "").strip()),
        message=escape_html((fields.message or "").strip()),
    )
