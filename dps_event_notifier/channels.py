"""Delivery outcomes and the contract every notification channel follows.

A channel's ``send(event)`` never raises for expected failures. It returns
one of three outcomes, and that classification is what decides whether the
dispatcher retries:

- ``Delivered``: done.
- ``Retryable(reason)``: transient (timeouts, 5xx, throttling). Try again later.
- ``Permanent(reason)``: retrying will not help (bad recipient, 4xx, auth).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Union, runtime_checkable

from .normalizer import Event


@dataclass(frozen=True)
class Delivered:
    detail: str = ""


@dataclass(frozen=True)
class Retryable:
    reason: str


@dataclass(frozen=True)
class Permanent:
    reason: str


Outcome = Union[Delivered, Retryable, Permanent]


@runtime_checkable
class Channel(Protocol):
    """One notification medium."""

    name: str

    def send(self, event: Event) -> Outcome:
        ...


def http_status_outcome(status: int, body: str = "") -> Outcome:
    """Classify an HTTP status from a collaborator."""
    snippet = (body or "").strip()[:200]
    if 200 <= status < 300:
        return Delivered(f"HTTP {status}")
    if status == 429 or status == 408 or status >= 500:
        return Retryable(f"HTTP {status} {snippet}".strip())
    return Permanent(f"HTTP {status} {snippet}".strip())


__all__ = ["Delivered", "Retryable", "Permanent", "Outcome", "Channel", "http_status_outcome"]
