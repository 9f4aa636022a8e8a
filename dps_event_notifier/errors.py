"""Exception types shared across the monitor."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for errors raised by the monitor."""


class PortalError(MonitorError):
    """A portal fetch failed; the cycle that issued it is abandoned."""


class AuthError(PortalError):
    """The portal rejected the configured credentials. Not retried."""


class TransportError(PortalError):
    """Network failure, timeout or server error talking to the portal."""


class ParseError(PortalError):
    """The portal answered with a shape we do not understand."""


class RateLimitExceeded(MonitorError):
    """A token could not be obtained within the configured wait ceiling."""

    def __init__(self, wait: float, ceiling: float):
        self.wait = wait
        self.ceiling = ceiling
        super().__init__(f"rate limit wait {wait:.2f}s exceeds ceiling {ceiling:.2f}s")


__all__ = [
    "MonitorError",
    "PortalError",
    "AuthError",
    "TransportError",
    "ParseError",
    "RateLimitExceeded",
]
