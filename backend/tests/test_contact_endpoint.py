"""
Contact endpoint tests.

Each test builds its own application with injected mail settings and a fresh
rate limiter. The SMTP relay is always mocked; no real connections.

Coverage:
  - Test-mode (no relay) submissions
  - Validation failures
  - Rate limiting, caller key resolution, Retry-After
  - Delivered / failed dispatch outcomes
  - Method, 404 and malformed-body handling
"""

import smtplib
from unittest.mock import MagicMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from contact_relay.config import MailSettings
from contact_relay.main import create_app
from contact_relay.routers.contact import (
    RATE_LIMITED_ERROR,
    SEND_FAILED_ERROR,
    SENT_MESSAGE,
    SIMULATED_MESSAGE,
    UNKNOWN_CALLER,
    resolve_caller_key,
)
from contact_relay.services.rate_limiter import RateLimiter

ENDPOINT = "/api/contact"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _valid_payload(**overrides) -> dict:
    payload = {
        "name": "Al",
        "email": "a@b.co",
        "subject": "Hello there",
        "message": "This is a test.",
    }
    payload.update(overrides)
    return payload


def _relay_settings() -> MailSettings:
    return MailSettings(
        host="smtp.example.com",
        port=587,
        user="relay@example.com",
        password="s3cret",
        to_address="owner@example.com",
    )


def _client(mail_settings: MailSettings = None, limiter: RateLimiter = None) -> TestClient:
    app = create_app(
        mail_settings=mail_settings or MailSettings(),
        rate_limiter=limiter if limiter is not None else RateLimiter(),
    )
    return TestClient(app)


def _read_timeout() -> smtplib.SMTPServerDisconnected:
    """smtplib's rendering of a read timeout: a disconnect raised while handling it."""
    try:
        try:
            raise TimeoutError("timed out")
        except OSError as exc:
            raise smtplib.SMTPServerDisconnected(f"Connection unexpectedly closed: {exc}")
    except smtplib.SMTPServerDisconnected as wrapped:
        return wrapped


@pytest.fixture
def mock_smtp():
    """Patch the relay connection; yields the mock SMTP client."""
    with patch("contact_relay.services.mailer.open_smtp_connection") as mock_open:
        smtp = MagicMock()
        mock_open.return_value = smtp
        smtp.mock_open = mock_open
        yield smtp


# ---------------------------------------------------------------------------
# Test mode
# ---------------------------------------------------------------------------

class TestSubmitWithoutRelay:
    """No SMTP configuration: message is built and logged, not sent."""

    def test_valid_submission_succeeds_in_test_mode(self, mock_smtp):
        """Valid submission returns 200 with the test-mode message and no SMTP call."""
        response = _client().post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": SIMULATED_MESSAGE}
        mock_smtp.mock_open.assert_not_called()

    def test_test_mode_message_text(self):
        assert SIMULATED_MESSAGE == "Message sent successfully! (TEST MODE - Check server logs)"

    def test_extra_fields_ignored(self):
        """Unknown body keys do not fail the request."""
        response = _client().post(ENDPOINT, json=_valid_payload(website="", utm="x"))
        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestSubmitValidation:
    """Invalid input returns 400 with every error."""

    def test_all_invalid_returns_four_errors(self, mock_smtp):
        """Every violated rule is reported, in field order."""
        response = _client().post(
            ENDPOINT,
            json={"name": "A", "email": "bad", "subject": "Hi", "message": "short"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errors"] == [
            "Name must be at least 2 characters long",
            "Please provide a valid email address",
            "Subject must be at least 5 characters long",
            "Message must be at least 10 characters long",
        ]
        mock_smtp.mock_open.assert_not_called()

    def test_empty_object_returns_four_errors(self):
        """Missing fields count as empty."""
        response = _client().post(ENDPOINT, json={})

        assert response.status_code == 400
        assert len(response.json()["errors"]) == 4

    def test_single_invalid_field(self):
        """Only the failing field is reported."""
        response = _client().post(ENDPOINT, json=_valid_payload(email="nope"))

        assert response.status_code == 400
        assert response.json()["errors"] == ["Please provide a valid email address"]

    def test_non_object_body_is_400(self):
        """A JSON array body is rejected as invalid."""
        response = _client().post(ENDPOINT, json=["not", "an", "object"])

        assert response.status_code == 400
        assert response.json() == {"success": False, "errors": ["Invalid request body"]}

    def test_non_string_field_is_400(self):
        """A number where a string is expected is rejected."""
        response = _client().post(ENDPOINT, json=_valid_payload(name=42))

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_invalid_json_is_400(self):
        """Unparseable JSON is a 400, not a 500."""
        response = _client().post(
            ENDPOINT,
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestSubmitRateLimit:
    """Per-caller throttling ahead of validation."""

    def test_sixth_submission_is_throttled(self):
        """Five submissions pass; the sixth gets 429 with Retry-After."""
        client = _client()
        for _ in range(5):
            assert client.post(ENDPOINT, json=_valid_payload()).status_code == 200

        response = client.post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 429
        assert response.json() == {"success": False, "error": RATE_LIMITED_ERROR}
        assert int(response.headers["Retry-After"]) > 0

    def test_rate_limit_error_text(self):
        assert RATE_LIMITED_ERROR == "Too many requests. Please wait before sending another message."

    def test_invalid_submissions_count_against_limit(self):
        """Rejected submissions still use up the caller's budget."""
        client = _client(limiter=RateLimiter(max_requests=2))
        client.post(ENDPOINT, json={})
        client.post(ENDPOINT, json={})

        response = client.post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 429

    def test_throttled_request_skips_validation(self):
        """A throttled request gets no validation errors."""
        client = _client(limiter=RateLimiter(max_requests=1))
        client.post(ENDPOINT, json=_valid_payload())

        response = client.post(ENDPOINT, json={"name": "A"})

        assert response.status_code == 429
        assert "errors" not in response.json()

    def test_forwarded_for_gets_its_own_bucket(self):
        """Callers behind a proxy are counted separately."""
        client = _client(limiter=RateLimiter(max_requests=1))

        first = client.post(ENDPOINT, json=_valid_payload(), headers={"X-Forwarded-For": "203.0.113.5"})
        second = client.post(ENDPOINT, json=_valid_payload(), headers={"X-Forwarded-For": "203.0.113.6"})
        third = client.post(ENDPOINT, json=_valid_payload(), headers={"X-Forwarded-For": "203.0.113.5"})

        assert first.status_code == 200
        assert second.status_code == 200
        assert third.status_code == 429

    def test_limiter_is_shared_across_requests_of_one_app(self):
        """The app uses the limiter it was built with."""
        limiter = RateLimiter(max_requests=5)
        client = _client(limiter=limiter)
        client.post(ENDPOINT, json=_valid_payload())

        assert len(limiter) == 1

    def test_fresh_app_gets_fresh_limiter(self):
        """Limiter state does not leak between app instances."""
        first = _client(limiter=RateLimiter(max_requests=1))
        first.post(ENDPOINT, json=_valid_payload())

        second = _client(limiter=RateLimiter(max_requests=1))
        assert second.post(ENDPOINT, json=_valid_payload()).status_code == 200


class TestResolveCallerKey:
    """Caller key priority: X-Forwarded-For, X-Real-IP, peer, 'unknown'."""

    def _request(self, headers=None, client_host="10.0.0.1"):
        request = Mock()
        request.headers = headers or {}
        request.client = Mock(host=client_host) if client_host else None
        return request

    def test_forwarded_for_first_hop(self):
        """First X-Forwarded-For hop wins over X-Real-IP."""
        request = self._request({"x-forwarded-for": "203.0.113.5, 10.0.0.2", "x-real-ip": "198.51.100.1"})
        assert resolve_caller_key(request) == "203.0.113.5"

    def test_real_ip_when_no_forwarded_for(self):
        """X-Real-IP is used without X-Forwarded-For."""
        request = self._request({"x-real-ip": "198.51.100.1"})
        assert resolve_caller_key(request) == "198.51.100.1"

    def test_peer_address(self):
        """Falls back to the transport peer."""
        assert resolve_caller_key(self._request()) == "10.0.0.1"

    def test_unknown_when_nothing_available(self):
        """No headers and no peer share the 'unknown' bucket."""
        assert resolve_caller_key(self._request(client_host=None)) == UNKNOWN_CALLER

    def test_blank_forwarded_for_falls_through(self):
        request = self._request({"x-forwarded-for": "  "})
        assert resolve_caller_key(request) == "10.0.0.1"


# ---------------------------------------------------------------------------
# Relay delivery
# ---------------------------------------------------------------------------

class TestSubmitWithRelay:
    """Configured relay: delivered or mapped failure."""

    def test_delivered_returns_message_id(self, mock_smtp):
        """Delivery returns the message and its Message-ID."""
        response = _client(mail_settings=_relay_settings()).post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == SENT_MESSAGE
        assert body["messageId"].startswith("<")
        mock_smtp.login.assert_called_once_with("relay@example.com", "s3cret")
        mock_smtp.send_message.assert_called_once()

    def test_sent_message_is_sanitized(self, mock_smtp):
        """The relayed HTML is escaped and keeps line breaks."""
        _client(mail_settings=_relay_settings()).post(
            ENDPOINT, json=_valid_payload(message="<b>bold</b> claim\nsecond line"),
        )

        sent = mock_smtp.send_message.call_args.args[0]
        html = sent.get_body(preferencelist=("html",)).get_content()
        assert "&lt;b&gt;bold&lt;/b&gt; claim<br>second line" in html
        assert sent["Reply-To"] == "a@b.co"

    def test_multi_address_email_is_not_a_reply_to(self, mock_smtp):
        """An email that would address a third party is delivered without Reply-To."""
        response = _client(mail_settings=_relay_settings()).post(
            ENDPOINT, json=_valid_payload(email="x,evil@c.d"),
        )

        assert response.status_code == 200
        sent = mock_smtp.send_message.call_args.args[0]
        assert sent["Reply-To"] is None

    def test_authentication_failure(self, mock_smtp):
        """Rejected credentials map to the authentication message."""
        mock_smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")

        response = _client(mail_settings=_relay_settings()).post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 500
        assert response.json() == {"success": False, "errors": ["Email authentication failed"]}

    def test_connection_failure(self, mock_smtp):
        """Refused connection maps to the connection message."""
        mock_smtp.mock_open.side_effect = ConnectionRefusedError(111, "Connection refused")

        response = _client(mail_settings=_relay_settings()).post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 500
        assert response.json()["errors"] == ["Failed to connect to email server"]

    def test_timeout(self, mock_smtp):
        """A relay that stops answering maps to the timeout message."""
        mock_smtp.send_message.side_effect = _read_timeout()

        response = _client(mail_settings=_relay_settings()).post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 500
        assert response.json()["errors"] == ["Email server timeout"]

    def test_unexpected_error_returns_generic_message(self):
        """Unexpected errors never leak their text to the caller."""
        with patch("contact_relay.routers.contact.dispatch", side_effect=RuntimeError("kaboom")):
            response = _client(mail_settings=_relay_settings()).post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 500
        assert response.json() == {"success": False, "errors": [SEND_FAILED_ERROR]}
        assert "kaboom" not in response.text


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

class TestHttpSurface:
    """Methods, unknown routes and CORS preflight."""

    def test_get_not_allowed(self):
        """GET on the contact endpoint is 405."""
        response = _client().get(ENDPOINT)

        assert response.status_code == 405
        assert response.json() == {"success": False, "error": "Method not allowed"}

    def test_unknown_route_is_json_404(self):
        """Unknown paths get a JSON 404."""
        response = _client().get("/api/nope")

        assert response.status_code == 404
        assert response.json() == {"success": False, "errors": ["Endpoint not found"]}

    def test_unhandled_error_is_json_500(self):
        """Errors outside the pipeline become a generic JSON 500."""
        app = create_app(mail_settings=MailSettings(), rate_limiter=RateLimiter())
        client = TestClient(app, raise_server_exceptions=False)

        with patch("contact_relay.routers.contact.resolve_caller_key", side_effect=RuntimeError("bug")):
            response = client.post(ENDPOINT, json=_valid_payload())

        assert response.status_code == 500
        assert response.json() == {"success": False, "errors": ["Internal server error"]}

    def test_cors_preflight(self):
        """Preflight from any origin is allowed by default."""
        response = _client().options(
            ENDPOINT,
            headers={
                "Origin": "https://example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
