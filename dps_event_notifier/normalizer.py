"""Raw portal record -> canonical ``Event``.

Everything past this module works with ``Event`` only. Raw records are
loosely shaped dicts (JSON objects or table rows); field names are matched
ignoring case, spacing and punctuation, and values have whitespace
collapsed, so the same listing always yields the same ``id`` and
``raw_hash``.
"""

from __future__ import annotations

import datetime as _dt
import hashlib
import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .errors import ParseError
from .utils import to_zone

_ID_FIELDS = ("eventid", "id", "eventnumber", "eventno", "listingid", "key")
_TITLE_FIELDS = ("title", "eventtitle", "name", "eventname", "subject", "description")
_CATEGORY_FIELDS = ("category", "type", "eventtype", "eventcategory", "division")
_WHEN_FIELDS = ("scheduledat", "scheduled", "datetime", "start", "starttime", "startdate", "date", "when")
_TIME_FIELDS = ("time", "starttimeofday")
_URL_FIELDS = ("sourceurl", "url", "link", "href", "detailsurl")

_WS = re.compile(r"\s+")
_KEY = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class Event:
    id: str
    title: str
    category: str
    scheduled_at: _dt.datetime
    source_url: str
    raw_hash: str

    def to_dict(self) -> dict:
        d = asdict(self)
        d["scheduled_at"] = self.scheduled_at.isoformat()
        return d


def _clean(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ""
    return _WS.sub(" ", str(value)).strip()


def _fold_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
    # keys colliding after folding resolve by sorted raw key, not input order
    folded: dict[str, Any] = {}
    for k in sorted(raw, key=str):
        folded.setdefault(_KEY.sub("", str(k).lower()), raw[k])
    return folded


def _first(fields: Mapping[str, Any], names: Sequence[str]) -> str:
    for name in names:
        val = _clean(fields.get(name))
        if val:
            return val
    return ""


def content_hash(title: str, category: str, scheduled_at: _dt.datetime, source_url: str) -> str:
    """sha256 over the normalized fields, excluding the id."""
    payload = json.dumps(
        {
            "title": title,
            "category": category,
            "scheduled_at": scheduled_at.isoformat(),
            "source_url": source_url,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _derived_id(title: str, category: str, scheduled_at: _dt.datetime) -> str:
    basis = "|".join((category.lower(), title.lower(), scheduled_at.isoformat()))
    return "h-" + hashlib.sha1(basis.encode("utf-8")).hexdigest()[:20]


def normalize(raw: Mapping[str, Any], zone: _dt.tzinfo) -> Event:
    """Validate one raw record and return its canonical form.

    Raises:
        ParseError: the record has no title or no usable time.
    """
    if not isinstance(raw, Mapping):
        raise ParseError(f"Expected a mapping, got {type(raw).__name__}")
    fields = _fold_keys(raw)

    title = _first(fields, _TITLE_FIELDS)
    if not title:
        raise ParseError(f"Event record without a title: keys={sorted(fields)}")

    when = _first(fields, _WHEN_FIELDS)
    time_of_day = _first(fields, _TIME_FIELDS)
    if when and time_of_day and ":" not in when:
        when = f"{when} {time_of_day}"
    try:
        scheduled_at = to_zone(when, zone)
    except ValueError as e:
        raise ParseError(f"Event {title!r}: {e}") from e

    category = _first(fields, _CATEGORY_FIELDS)
    source_url = _first(fields, _URL_FIELDS)

    event_id = _first(fields, _ID_FIELDS) or _derived_id(title, category, scheduled_at)

    return Event(
        id=event_id,
        title=title,
        category=category,
        scheduled_at=scheduled_at,
        source_url=source_url,
        raw_hash=content_hash(title, category, scheduled_at, source_url),
    )


def normalize_all(raws: Iterable[Mapping[str, Any]], zone: _dt.tzinfo, base_url: Optional[str] = None) -> List[Event]:
    """Normalize a fetch result, one event per id.

    When two records share an id the later one wins, keeping the position
    of the first. Relative ``source_url`` values are resolved against
    ``base_url``.
    """
    by_id: dict[str, Event] = {}
    for raw in raws:
        ev = normalize(raw, zone)
        if base_url and ev.source_url and not ev.source_url.startswith(("http://", "https://")):
            url = base_url.rstrip("/") + "/" + ev.source_url.lstrip("/")
            ev = Event(
                id=ev.id,
                title=ev.title,
                category=ev.category,
                scheduled_at=ev.scheduled_at,
                source_url=url,
                raw_hash=content_hash(ev.title, ev.category, ev.scheduled_at, url),
            )
        by_id[ev.id] = ev
    return list(by_id.values())


__all__ = ["Event", "normalize", "normalize_all", "content_hash"]
