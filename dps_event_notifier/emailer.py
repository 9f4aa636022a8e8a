"""Email channel via SMTP.

Sends one message per event to the configured recipients. Supports
STARTTLS (587) or SSL (465). Keep bodies short & link out.
"""

from __future__ import annotations

import logging
import smtplib
import socket
import ssl
from email.message import EmailMessage
from typing import Callable, Optional, Sequence

from .channels import Delivered, Outcome, Permanent, Retryable
from .normalizer import Event

logger = logging.getLogger(__name__)


class SmtpSender:
    """Thin SMTP transport. Raises smtplib/socket errors unchanged."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        use_tls: bool = True,
        timeout: float = 20,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        smtp_ssl_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP_SSL,
    ):
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self._smtp = smtp_factory
        self._smtp_ssl = smtp_ssl_factory

    def send(self, msg: EmailMessage) -> None:
        if self.use_tls and self.port == 587:
            with self._smtp(self.host, self.port, timeout=self.timeout) as s:
                s.ehlo()
                s.starttls(context=ssl.create_default_context())
                s.login(self.username, self.password)
                s.send_message(msg)
        else:
            with self._smtp_ssl(self.host, self.port, context=ssl.create_default_context(),
                                timeout=self.timeout) as s:
                s.login(self.username, self.password)
                s.send_message(msg)


def classify_smtp_error(exc: BaseException) -> Outcome:
    """Map an SMTP/socket failure to a delivery outcome.

    SMTP reply codes follow their own convention: 4xx is transient, 5xx is
    permanent.
    """
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return Permanent(f"SMTP authentication rejected ({exc.smtp_code})")
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return Permanent("invalid recipient: " + ", ".join(sorted(exc.recipients)))
    if isinstance(exc, smtplib.SMTPSenderRefused):
        return Permanent(f"sender refused: {exc.sender}")
    if isinstance(exc, smtplib.SMTPResponseException):
        code = int(exc.smtp_code or 0)
        text = exc.smtp_error.decode(errors="replace") if isinstance(exc.smtp_error, bytes) else str(exc.smtp_error)
        if 400 <= code < 500:
            return Retryable(f"SMTP {code} {text}".strip())
        return Permanent(f"SMTP {code} {text}".strip())
    if isinstance(exc, smtplib.SMTPServerDisconnected):
        return Retryable(f"{type(exc).__name__}: {exc}")
    # SMTPException subclasses OSError, so it must be checked first
    if isinstance(exc, smtplib.SMTPException):
        return Permanent(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (socket.timeout, OSError)):
        return Retryable(f"{type(exc).__name__}: {exc}")
    return Permanent(f"{type(exc).__name__}: {exc}")


def _build_subject(prefix: str, event: Event) -> str:
    when = event.scheduled_at.strftime("%b %d, %Y %I:%M %p")
    return f"{prefix} Event: {event.title} ({when})"


def _build_bodies(event: Event) -> tuple[str, str]:
    """Return (plain_text, html) bodies."""
    when = event.scheduled_at.strftime("%A, %B %d, %Y at %I:%M %p %Z")
    lines = [f"When: {when}"]
    if event.category:
        lines.append(f"Category: {event.category}")
    lines.append(f"Reference: {event.id}")

    plain = (
        f"Event: {event.title}\n\n"
        + "\n".join(lines)
        + (f"\n\nLink: {event.source_url}\n" if event.source_url else "\n")
    )

    li_html = "".join("<li>{}</li>".format(l) for l in lines)
    link_html = '<p><a href="{}">Open on the portal</a></p>'.format(event.source_url) if event.source_url else ""
    html = (
        "<html>"
        "<body>"
        "<h3>Event: {title}</h3>"
        "<ul>{lis}</ul>"
        "{link}"
        "</body>"
        "</html>"
    ).format(title=event.title, lis=li_html, link=link_html)

    return plain, html


class EmailChannel:
    name = "email"

    def __init__(
        self,
        sender: SmtpSender,
        from_addr: str,
        to_addrs: Sequence[str],
        subject_prefix: str = "[DPS]",
    ):
        self.sender = sender
        self.from_addr = from_addr
        self.to_addrs = list(to_addrs)
        self.subject_prefix = subject_prefix

    def compose(self, event: Event, subject: Optional[str] = None) -> EmailMessage:
        plain, html = _build_bodies(event)
        msg = EmailMessage()
        msg["Subject"] = subject or _build_subject(self.subject_prefix, event)
        msg["From"] = self.from_addr
        msg["To"] = ", ".join(self.to_addrs)
        msg.set_content(plain)
        msg.add_alternative(html, subtype="html")
        return msg

    def deliver(self, msg: EmailMessage) -> Outcome:
        """Hand ``msg`` to SMTP and classify what happened."""
        if not self.to_addrs:
            return Permanent("no recipients configured")
        try:
            self.sender.send(msg)
        except Exception as e:
            outcome = classify_smtp_error(e)
            logger.warning("Email to %s failed: %s", ", ".join(self.to_addrs), outcome)
            return outcome
        logger.info("Email sent to %s (subject=%s)", ", ".join(self.to_addrs), msg.get("Subject"))
        return Delivered()

    def send(self, event: Event) -> Outcome:
        return self.deliver(self.compose(event))


__all__ = ["EmailChannel", "SmtpSender", "classify_smtp_error"]
