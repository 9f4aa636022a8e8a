"""Tests for the email, PDF and webhook channels."""

from __future__ import annotations

import smtplib
import socket
from unittest.mock import MagicMock

import pytest
import requests

from dps_event_notifier.channels import Delivered, Permanent, Retryable, http_status_outcome
from dps_event_notifier.emailer import EmailChannel, SmtpSender, classify_smtp_error
from dps_event_notifier.notifier import WebhookChannel
from dps_event_notifier.pdf import PdfChannel, load_renderer
from tests.fakes import FakeResponse, FakeSession


class RecordingSender:
    """SMTP sender stand-in: records messages or raises a scripted error."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.messages = []

    def send(self, msg):
        if self.error is not None:
            raise self.error
        self.messages.append(msg)


def _mailer(sender) -> EmailChannel:
    return EmailChannel(sender, "alerts@example.com", ["ops@example.com"], subject_prefix="[DPS]")


class TestClassifySmtpError:
    """SMTP failure classification."""

    @pytest.mark.parametrize("exc", [
        smtplib.SMTPRecipientsRefused({"bad@example.com": (550, b"no such user")}),
        smtplib.SMTPAuthenticationError(535, b"bad credentials"),
        smtplib.SMTPSenderRefused(553, b"sender rejected", "alerts@example.com"),
        smtplib.SMTPDataError(554, b"rejected"),
    ])
    def test_permanent(self, exc) -> None:
        """Refusals, auth failures and 5xx replies are permanent."""
        assert isinstance(classify_smtp_error(exc), Permanent)

    @pytest.mark.parametrize("exc", [
        smtplib.SMTPServerDisconnected("gone"),
        smtplib.SMTPDataError(451, b"try later"),
        socket.timeout("timed out"),
        ConnectionRefusedError("refused"),
    ])
    def test_retryable(self, exc) -> None:
        """Disconnects, timeouts and 4xx replies are transient."""
        assert isinstance(classify_smtp_error(exc), Retryable)

    def test_invalid_recipient_reason(self) -> None:
        """The reason names the refused recipient."""
        outcome = classify_smtp_error(smtplib.SMTPRecipientsRefused({"bad@example.com": (550, b"x")}))
        assert "invalid recipient" in outcome.reason
        assert "bad@example.com" in outcome.reason


class TestEmailChannel:
    """Email composition and delivery."""

    def test_send_composes_message(self, make_event) -> None:
        """The message carries title, time and link."""
        sender = RecordingSender()
        outcome = _mailer(sender).send(make_event(url="https://portal.example.gov/e/A1"))
        assert isinstance(outcome, Delivered)
        [msg] = sender.messages
        assert msg["Subject"].startswith("[DPS] Event: Hearing X")
        assert msg["To"] == "ops@example.com"
        body = msg.get_body(preferencelist=("plain",)).get_content()
        assert "Reference: A1" in body
        assert "https://portal.example.gov/e/A1" in body

    def test_wording_fits_updated_events(self, make_event) -> None:
        """Re-notifications for updates are not announced as new."""
        event = make_event(title="Hearing X - Rescheduled")
        msg = _mailer(RecordingSender()).compose(event)
        assert "New event" not in msg["Subject"]
        assert "New event" not in msg.get_body(preferencelist=("plain",)).get_content()
        assert msg["Subject"].startswith("[DPS] Event: Hearing X - Rescheduled")

    def test_send_failure_classified(self, make_event) -> None:
        """SMTP errors come back as outcomes, not exceptions."""
        sender = RecordingSender(smtplib.SMTPRecipientsRefused({"ops@example.com": (550, b"x")}))
        assert isinstance(_mailer(sender).send(make_event()), Permanent)

    def test_no_recipients_is_permanent(self, make_event) -> None:
        """An empty recipient list cannot be fixed by retrying."""
        channel = EmailChannel(RecordingSender(), "alerts@example.com", [])
        assert isinstance(channel.send(make_event()), Permanent)


class TestSmtpSender:
    """Transport selection."""

    def test_starttls_on_587(self) -> None:
        """Port 587 with TLS uses STARTTLS."""
        smtp = MagicMock()
        conn = smtp.return_value.__enter__.return_value
        sender = SmtpSender("smtp.example.com", 587, "u", "p", smtp_factory=smtp, smtp_ssl_factory=MagicMock())
        sender.send(MagicMock())
        conn.starttls.assert_called_once()
        conn.login.assert_called_once_with("u", "p")
        conn.send_message.assert_called_once()

    def test_ssl_on_465(self) -> None:
        """Other ports use implicit SSL."""
        smtp_ssl = MagicMock()
        conn = smtp_ssl.return_value.__enter__.return_value
        sender = SmtpSender("smtp.example.com", 465, "u", "p", smtp_factory=MagicMock(), smtp_ssl_factory=smtp_ssl)
        sender.send(MagicMock())
        conn.login.assert_called_once_with("u", "p")
        conn.send_message.assert_called_once()


class TestPdfChannel:
    """PDF export."""

    def test_attaches_rendered_document(self, make_event) -> None:
        """The renderer output is attached as application/pdf."""
        sender = RecordingSender()
        seen = []

        def renderer(events):
            seen.extend(events)
            return b"%PDF-1.7 fake"

        outcome = PdfChannel(renderer, _mailer(sender), filename="events.pdf").send(make_event())

        assert isinstance(outcome, Delivered)
        assert seen[0]["id"] == "A1"
        [msg] = sender.messages
        [attachment] = list(msg.iter_attachments())
        assert attachment.get_content_type() == "application/pdf"
        assert attachment.get_filename() == "events.pdf"
        assert attachment.get_content() == b"%PDF-1.7 fake"

    def test_renderer_timeout_is_retryable(self, make_event) -> None:
        """A renderer timing out can be retried."""
        def renderer(events):
            raise TimeoutError("renderer slow")

        outcome = PdfChannel(renderer, _mailer(RecordingSender())).send(make_event())
        assert isinstance(outcome, Retryable)

    def test_renderer_bug_is_permanent(self, make_event) -> None:
        """A renderer error or empty output is permanent."""
        def broken(events):
            raise ValueError("bad template")

        assert isinstance(PdfChannel(broken, _mailer(RecordingSender())).send(make_event()), Permanent)
        assert isinstance(PdfChannel(lambda e: b"", _mailer(RecordingSender())).send(make_event()), Permanent)

    def test_load_renderer(self) -> None:
        """Renderers load from 'module:callable' paths."""
        assert load_renderer("json:dumps") is __import__("json").dumps
        with pytest.raises(ValueError):
            load_renderer("json.dumps")


class TestWebhookChannel:
    """Messaging webhook."""

    def test_posts_embed_with_token(self, make_event) -> None:
        """A 204 is delivered and the bearer token is sent."""
        session = FakeSession(FakeResponse(204))
        channel = WebhookChannel("https://hooks.example.com/x", "secret", session=session)

        assert isinstance(channel.send(make_event()), Delivered)

        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", "https://hooks.example.com/x")
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert kwargs["json"]["embeds"][0]["title"] == "Event: Hearing X"

    @pytest.mark.parametrize("status,kind", [
        (500, Retryable), (503, Retryable), (429, Retryable),
        (400, Permanent), (401, Permanent), (403, Permanent), (404, Permanent),
    ])
    def test_status_classification(self, make_event, status, kind) -> None:
        """5xx and 429 retry; other 4xx are permanent."""
        session = FakeSession(FakeResponse(status, "nope", headers={"Retry-After": "3"}))
        outcome = WebhookChannel("https://hooks.example.com/x", session=session).send(make_event())
        assert isinstance(outcome, kind)

    def test_timeout_is_retryable(self, make_event) -> None:
        """Network timeouts retry."""
        session = FakeSession(requests.Timeout("slow"))
        outcome = WebhookChannel("https://hooks.example.com/x", session=session).send(make_event())
        assert isinstance(outcome, Retryable)


def test_http_status_outcome() -> None:
    """Shared HTTP classification."""
    assert isinstance(http_status_outcome(200), Delivered)
    assert isinstance(http_status_outcome(408), Retryable)
    assert isinstance(http_status_outcome(422), Permanent)
