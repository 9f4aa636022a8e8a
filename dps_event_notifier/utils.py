"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session, building the retry policy used for portal
requests and normalising timestamps into the service time zone.
"""

from __future__ import annotations

import datetime as _dt
import logging
from typing import Union

import requests
from dateutil import parser as date_parser
from dateutil import tz as date_tz
from tenacity import (Retrying, before_sleep_log, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from .errors import TransportError


logger = logging.getLogger(__name__)


def get_http_session() -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    Caller is responsible for closing the session or letting it be
    garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": "Mozilla/5.0 (compatible; DPSEventNotifier/1.0)",
            "Accept": "application/json, text/html;q=0.9, */*;q=0.8",
        }
    )
    return session


def transport_retrying(max_attempts: int, *, wait=None) -> Retrying:
    """Retry policy for portal transport failures.

    Only ``TransportError`` is retried; auth and parse failures propagate on
    the first occurrence. Back-off is exponential between 1 and 30 seconds
    unless ``wait`` overrides it.
    """
    return Retrying(
        reraise=True,
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait if wait is not None else wait_exponential(multiplier=1, min=1, max=30),
        retry=retry_if_exception_type(TransportError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )


def get_zone(name: str) -> _dt.tzinfo:
    zone = date_tz.gettz(name)
    if zone is None:
        raise ValueError(f"Unknown time zone: {name!r}")
    return zone


def to_zone(value: Union[str, _dt.datetime], zone: _dt.tzinfo) -> _dt.datetime:
    """Return ``value`` as an aware datetime in ``zone``.

    Strings are parsed with dateutil. Naive values are taken to already be
    local to ``zone``.
    """
    if isinstance(value, _dt.datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = date_parser.parse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Unparseable timestamp: {value!r}") from e
    else:
        raise ValueError(f"Unparseable timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=zone)
    return dt.astimezone(zone)


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


__all__ = ["get_http_session", "transport_retrying", "get_zone", "to_zone", "utcnow"]
