"""
Contact notification mailer.

Builds the operator notification for a sanitized submission and either
delivers it through the configured SMTP relay or, when the relay is not
configured, logs it instead ("test mode"). Test mode still builds the full
message so content problems show up in the logs without real delivery.

Delivery is a single attempt: connect, STARTTLS if offered (or implicit TLS
when SMTP_SECURE=true), log in, send once, disconnect. Transport failures are
reduced to a DispatchErrorCategory; the raw exception is only logged.
"""

import logging
import smtplib
import socket
import ssl
from datetime import datetime, timezone
from email.errors import HeaderParseError
from email.headerregistry import Address
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Callable, Optional

from contact_relay.config import MailMode, MailSettings
from contact_relay.models.contact import (
    DispatchErrorCategory,
    DispatchOutcome,
    SanitizedSubmission,
)

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Contact Form: "

SmtpFactory = Callable[[MailSettings], smtplib.SMTP]


# ---------------------------------------------------------------------------
# Message construction
# ---------------------------------------------------------------------------

_HTML_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #333; border-bottom: 2px solid #007bff; padding-bottom: 10px;">
    New Contact Form Submission
  </h2>
  <div style="background-color: #f8f9fa; padding: 20px; border-radius: 5px; margin: 20px 0;">
    <table style="width: 100%; border-collapse: collapse;">
      <tr>
        <td style="font-weight: bold; padding: 8px 0; color: #555;">Name:</td>
        <td style="padding: 8px 0;">{name}</td>
      </tr>
      <tr>
        <td style="font-weight: bold; padding: 8px 0; color: #555;">Email:</td>
        <td style="padding: 8px 0;">
          <a href="mailto:{email}" style="color: #007bff; text-decoration: none;">{email}</a>
        </td>
      </tr>
      <tr>
        <td style="font-weight: bold; padding: 8px 0; color: #555;">Subject:</td>
        <td style="padding: 8px 0;">{subject}</td>
      </tr>
      <tr>
        <td style="font-weight: bold; padding: 8px 0; color: #555; vertical-align: top;">Message:</td>
        <td style="padding: 8px 0; line-height: 1.6;">{message}</td>
      </tr>
    </table>
  </div>
  <div style="margin-top: 30px; padding-top: 20px; border-top: 1px solid #ddd; color: #888; font-size: 12px;">
    <p>This message was sent via {site_name}</p>
    <p>Received: {received}</p>
  </div>
</div>
"""

_TEXT_TEMPLATE = """\
New Contact Form Submission

Name: {name}
Email: {email}
Subject: {subject}

Message:
{message}

---
This message was sent via {site_name}
Received: {received}
"""


def _header_safe(value: str) -> str:
    """Collapse whitespace (including CR/LF) so a value fits on one header line."""
    return " ".join(value.split())


def html_line_breaks(text: str) -> str:
    """Replace each newline with <br> so the message keeps its line structure in HTML."""
    return text.replace("\r\n", "\n").replace("\n", "<br>")


def _sender_domain(address: str) -> Optional[str]:
    _, _, domain = address.rpartition("@")
    return domain or None


def reply_to_address(email: str) -> Optional[Address]:
    """
    Parse the visitor's email as exactly one mailbox for Reply-To.

    The form validator is deliberately loose, so values like "x,evil@c.d"
    get through; those would expand to several recipients in a header.
    Returns None when the value is not a single addr-spec.
    """
    try:
        return Address(addr_spec=_header_safe(email))
    except (ValueError, IndexError, HeaderParseError):
        return None


def build_contact_message(
    submission: SanitizedSubmission,
    settings: MailSettings,
    received_at: Optional[datetime] = None,
) -> EmailMessage:
    """
    Build the notification email for a sanitized submission.

    The visitor's name is used as the From display name, but the From
    address is always the relay's own sender address; the visitor's email
    goes in Reply-To.
    """
    received = (received_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S %Z")
    sender = settings.sender_address

    msg = EmailMessage()
    msg["From"] = formataddr((_header_safe(submission.name), sender))
    msg["To"] = settings.recipient_address
    reply_to = reply_to_address(submission.email)
    if reply_to is not None:
        msg["Reply-To"] = reply_to
    else:
        logger.warning(f"Omitting Reply-To: {submission.email!r} is not a single address")
    msg["Subject"] = SUBJECT_PREFIX + _header_safe(submission.subject)
    msg["Message-ID"] = make_msgid(domain=_sender_domain(sender))

    values = {
        "name": submission.name,
        "email": submission.email,
        "subject": submission.subject,
        "site_name": settings.site_name,
        "received": received,
    }
    msg.set_content(_TEXT_TEMPLATE.format(message=submission.message, **values))
    msg.add_alternative(
        _HTML_TEMPLATE.format(message=html_line_breaks(submission.message), **values),
        subtype="html",
    )
    return msg


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def open_smtp_connection(settings: MailSettings) -> smtplib.SMTP:
    """
    Connect to the relay and negotiate TLS. Does not log in.

    secure=True uses implicit TLS (SMTP_SSL); otherwise the connection is
    upgraded with STARTTLS when the relay advertises it.
    """
    context = ssl.create_default_context()
    if settings.secure:
        return smtplib.SMTP_SSL(
            settings.host, settings.port, timeout=settings.timeout, context=context
        )

    smtp = smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout)
    try:
        smtp.ehlo()
        if smtp.has_extn("starttls"):
            smtp.starttls(context=context)
            smtp.ehlo()
    except BaseException:
        smtp.close()
        raise
    return smtp


def _close_quietly(smtp: smtplib.SMTP) -> None:
    try:
        smtp.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.debug("SMTP QUIT failed (%r); closing socket", exc)
        smtp.close()


def deliver(
    message: EmailMessage,
    settings: MailSettings,
    smtp_factory: Optional[SmtpFactory] = None,
) -> str:
    """
    Send message through the relay in a single attempt.

    Logging in doubles as the credential check: a rejected login raises
    before any message data is sent.

    Returns the Message-ID of the sent message. Raises whatever smtplib or
    the socket layer raised.
    """
    factory = smtp_factory or open_smtp_connection
    smtp = factory(settings)
    try:
        smtp.login(settings.user, settings.password)
        smtp.send_message(message)
    finally:
        _close_quietly(smtp)
    return message["Message-ID"]


def _caused_by_timeout(exc: BaseException) -> bool:
    """True if exc or anything in its __cause__/__context__ chain is a socket timeout."""
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, (TimeoutError, socket.timeout)):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def classify_smtp_error(exc: BaseException) -> DispatchErrorCategory:
    """
    Reduce a transport exception to a DispatchErrorCategory.

    smtplib.SMTPException subclasses OSError, so the SMTP-specific checks
    must run before the generic socket ones. smtplib turns a read timeout
    into SMTPServerDisconnected raised while handling the TimeoutError, so
    timeouts are looked for along the exception chain.
    """
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return DispatchErrorCategory.AUTHENTICATION_FAILED
    if isinstance(exc, (smtplib.SMTPNotSupportedError, smtplib.SMTPHeloError)):
        return DispatchErrorCategory.CONFIGURATION_ERROR
    if _caused_by_timeout(exc):
        return DispatchErrorCategory.TIMED_OUT
    if isinstance(exc, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected)):
        return DispatchErrorCategory.CONNECTION_FAILED
    if isinstance(exc, smtplib.SMTPException):
        return DispatchErrorCategory.UNKNOWN
    if isinstance(exc, OSError):
        # ConnectionRefusedError, socket.gaierror, ssl.SSLError, ...
        return DispatchErrorCategory.CONNECTION_FAILED
    return DispatchErrorCategory.UNKNOWN


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _log_simulation(message: EmailMessage) -> None:
    text_part = message.get_body(preferencelist=("plain",))
    body = text_part.get_content() if text_part is not None else ""
    logger.info(
        "SMTP not configured - TEST MODE, message not delivered\n"
        "From: %s\nTo: %s\nReply-To: %s\nSubject: %s\n---\n%s---",
        message["From"],
        message["To"],
        message["Reply-To"],
        message["Subject"],
        body,
    )


def dispatch(
    submission: SanitizedSubmission,
    settings: MailSettings,
    smtp_factory: Optional[SmtpFactory] = None,
) -> DispatchOutcome:
    """
    Build and send (or simulate sending) the notification for a submission.

    Returns:
        DispatchOutcome.simulated()          - relay not configured, message logged
        DispatchOutcome.delivered(msg_id)    - relay accepted the message
        DispatchOutcome.failed(category)     - delivery failed; details logged

    Errors raised while building the message are not caught here.
    """
    message = build_contact_message(submission, settings)

    if settings.mode is MailMode.TEST:
        _log_simulation(message)
        return DispatchOutcome.simulated()

    logger.info(f"Sending contact email via {settings.host}:{settings.port} to {message['To']}")
    try:
        message_id = deliver(message, settings, smtp_factory)
    except Exception as exc:
        category = classify_smtp_error(exc)
        logger.error(f"Contact email delivery failed [{category.value}]: {exc!r}")
        return DispatchOutcome.failed(category)

    logger.info(f"Contact email sent: {message_id}")
    return DispatchOutcome.delivered(message_id)
