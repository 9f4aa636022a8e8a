"""Messaging webhook channel.

Posts one embed per event to a chat webhook (Discord-compatible payload).
An optional API token is sent as a bearer header for webhooks that need one.
"""
from __future__ import annotations

import logging
from typing import Optional

import requests

from .channels import Outcome, Permanent, Retryable, http_status_outcome
from .normalizer import Event
from .utils import get_http_session

logger = logging.getLogger(__name__)


def _build_embed(event: Event) -> dict:
    desc_lines: list[str] = [
        f"When: {event.scheduled_at.strftime('%a %b %d, %Y %I:%M %p %Z')}",
    ]
    if event.category:
        desc_lines.append(f"Category: {event.category}")
    desc_lines.append(f"Reference: {event.id}")

    embed = {
        "title": f"Event: {event.title}"[:256],
        "description": "\n".join(desc_lines),
        "timestamp": event.scheduled_at.isoformat(),
    }
    if event.source_url:
        embed["url"] = event.source_url
    return embed


class WebhookChannel:
    name = "messaging"

    def __init__(
        self,
        webhook_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ):
        self.webhook_url = webhook_url
        self.token = token
        self.session = session or get_http_session()
        self.timeout = timeout

    def send(self, event: Event) -> Outcome:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {"embeds": [_build_embed(event)]}
        logger.info("Sending webhook notification for %s (id=%s)", event.title, event.id)
        try:
            resp = self.session.post(self.webhook_url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning("Webhook unreachable for %s: %s", event.id, e)
            return Retryable(f"{type(e).__name__}: {e}")
        except requests.RequestException as e:
            logger.warning("Webhook request failed for %s: %s", event.id, e)
            return Permanent(f"{type(e).__name__}: {e}")

        outcome = http_status_outcome(resp.status_code, resp.text)
        if isinstance(outcome, Retryable) and resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            if retry_after:
                outcome = Retryable(f"HTTP 429 rate limited, retry after {retry_after}s")
        if not resp.ok:
            logger.warning("Webhook returned HTTP %s for %s", resp.status_code, event.id)
        return outcome

    def close(self) -> None:
        self.session.close()


__all__ = ["WebhookChannel"]
