"""Portal client.

Logs in to the portal and returns the event listing as raw records (one
dict per listing). Knows nothing about deduplication or notification.

Failures are classified for the caller:

- ``AuthError``: credentials rejected (401/403, or the login form comes
  back). Never retried.
- ``TransportError``: connection problems, timeouts, 429 and 5xx. Retried
  with exponential back-off up to ``max_attempts`` before giving up.
- ``ParseError``: the portal answered, but not with anything that looks
  like an event listing.

Every request takes a token from the portal rate limiter first and waits
for one if the bucket is empty.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from urllib.parse import urljoin

from .errors import AuthError, ParseError, TransportError
from .ratelimit import TokenBucket
from .utils import get_http_session, transport_retrying

logger = logging.getLogger(__name__)

_LIST_KEYS = ("events", "items", "data", "results", "records")


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


def _looks_like_login_page(soup: BeautifulSoup) -> bool:
    return soup.find("input", attrs={"type": "password"}) is not None


def _records_from_json(data: Any) -> List[dict]:
    if isinstance(data, dict):
        for key in _LIST_KEYS:
            val = data.get(key)
            if isinstance(val, list):
                return _records_from_json(val)
            if isinstance(val, dict):
                try:
                    return _records_from_json(val)
                except ParseError:
                    continue
        raise ParseError(f"JSON response without an event list (keys={sorted(data)[:10]})")
    if not isinstance(data, list):
        raise ParseError(f"JSON response is a {type(data).__name__}, expected a list of events")
    records: List[dict] = []
    for item in data:
        if not isinstance(item, dict):
            raise ParseError(f"Event entry is a {type(item).__name__}, expected an object")
        records.append(item)
    return records


def _row_link(row: Tag, base_url: str) -> Optional[str]:
    a = row.find("a", href=True)
    if a is None:
        return None
    return urljoin(base_url.rstrip("/") + "/", a["href"])


def _records_from_data_attrs(soup: BeautifulSoup, base_url: str) -> List[dict]:
    records: List[dict] = []
    for el in soup.find_all(attrs={"data-event-id": True}):
        rec: Dict[str, Any] = {k[5:]: v for k, v in el.attrs.items() if k.startswith("data-")}
        if "title" not in rec:
            heading = el.find(["h1", "h2", "h3", "h4", "a"])
            rec["title"] = (heading or el).get_text(" ", strip=True)
        link = _row_link(el, base_url)
        if link and "url" not in rec:
            rec["url"] = link
        records.append(rec)
    return records


def _records_from_table(table: Tag, base_url: str) -> List[dict]:
    header_cells = table.find_all("th")
    headers = [th.get_text(" ", strip=True) for th in header_cells]
    records: List[dict] = []
    for tr in table.find_all("tr"):
        cells = tr.find_all("td")
        if not cells:
            continue
        rec: Dict[str, Any] = {}
        for name, td in zip(headers, cells):
            if name:
                rec[name] = td.get_text(" ", strip=True)
        link = _row_link(tr, base_url)
        if link:
            rec.setdefault("url", link)
        if rec:
            records.append(rec)
    return records


def parse_events(body: str, content_type: str, base_url: str) -> List[dict]:
    """Turn a portal response body into raw event records."""
    text = (body or "").strip()
    if "json" in (content_type or "").lower() or text[:1] in ("[", "{"):
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ParseError(f"Malformed JSON from portal: {e}") from e
        return _records_from_json(data)

    soup = BeautifulSoup(text, "html.parser")
    records = _records_from_data_attrs(soup, base_url)
    if records:
        return records
    for table in soup.find_all("table"):
        if table.find("th") is not None:
            return _records_from_table(table, base_url)
    if _looks_like_login_page(soup):
        raise AuthError("Portal served the login form; session was not accepted")
    raise ParseError("No event table or event elements found in portal page")


class PortalClient:
    def __init__(
        self,
        base_url: str,
        credentials: Credentials,
        *,
        limiter: TokenBucket,
        session: Optional[requests.Session] = None,
        login_path: str = "/login",
        events_path: str = "/events",
        timeout: float = 30,
        max_attempts: int = 4,
        wait=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.limiter = limiter
        self.login_path = login_path
        self.events_path = events_path
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._wait = wait
        self._session = session

    def _url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))

    def _request(self, session: requests.Session, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        resp: Optional[requests.Response] = None
        for attempt in transport_retrying(self.max_attempts, wait=self._wait):
            with attempt:
                self.limiter.acquire()
                try:
                    resp = session.request(method, url, timeout=self.timeout, **kwargs)
                except requests.RequestException as e:
                    raise TransportError(f"{method} {path}: {e}") from e
                if resp.status_code in (401, 403):
                    raise AuthError(f"{method} {path}: HTTP {resp.status_code}")
                if resp.status_code == 429 or resp.status_code >= 500:
                    raise TransportError(f"{method} {path}: HTTP {resp.status_code}")
                if resp.status_code >= 400:
                    raise ParseError(f"{method} {path}: unexpected HTTP {resp.status_code}")
        assert resp is not None
        return resp

    def login(self, session: requests.Session, credentials: Credentials) -> None:
        resp = self._request(
            session,
            "POST",
            self.login_path,
            data={"username": credentials.username, "password": credentials.password},
        )
        ctype = resp.headers.get("Content-Type", "")
        if "json" in ctype.lower():
            try:
                payload = resp.json()
            except ValueError as e:
                raise ParseError(f"Malformed JSON from login: {e}") from e
            if isinstance(payload, dict) and (payload.get("success") is False or payload.get("error")):
                raise AuthError("Portal rejected the credentials")
            token = payload.get("token") if isinstance(payload, dict) else None
            if token:
                session.headers["Authorization"] = f"Bearer {token}"
        elif "html" in ctype.lower() and _looks_like_login_page(BeautifulSoup(resp.text, "html.parser")):
            raise AuthError("Portal rejected the credentials")
        logger.debug("Logged in to portal at %s", self.base_url)

    def fetch_events(self, credentials: Optional[Credentials] = None) -> List[dict]:
        """Log in and return every listed event as a raw record."""
        credentials = credentials or self.credentials
        session = self._session
        close_session = False
        if session is None:
            session = get_http_session()
            close_session = True
        try:
            self.login(session, credentials)
            resp = self._request(session, "GET", self.events_path)
            records = parse_events(resp.text, resp.headers.get("Content-Type", ""), self.base_url)
            logger.info("Fetched %d raw events from portal", len(records))
            return records
        finally:
            if close_session:
                session.close()


__all__ = ["PortalClient", "Credentials", "parse_events"]
