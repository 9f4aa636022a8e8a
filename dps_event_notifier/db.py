"""SQLite persistence layer for seen events and their delivery status.

The store is the only writer of ``seen_events`` and ``deliveries``. Every
write goes through one lock so concurrent dispatch threads never lose an
update, and ``diff()`` commits before it returns: a crash after the diff
cannot make the next run notify the same event twice.
"""

from __future__ import annotations

import datetime as _dt
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .normalizer import Event
from .utils import utcnow

PENDING = "pending"
DELIVERED = "delivered"
FAILED = "failed"
STATUSES = (PENDING, DELIVERED, FAILED)


@dataclass
class SeenEntry:
    id: str
    first_seen_at: _dt.datetime
    raw_hash: str
    last_notified_at: Optional[_dt.datetime] = None
    delivery_status: Dict[str, str] = field(default_factory=dict)


@dataclass
class CycleResult:
    new: List[Event] = field(default_factory=list)
    updated: List[Event] = field(default_factory=list)
    unchanged: List[Event] = field(default_factory=list)

    @property
    def changed(self) -> List[Event]:
        """Events eligible for dispatch."""
        return self.new + self.updated


def _ts(value: Optional[str]) -> Optional[_dt.datetime]:
    return _dt.datetime.fromisoformat(value) if value else None


class EventStore:
    def __init__(self, path: str):
        self.path = path
        self._write_lock = threading.RLock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30)
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._write_lock, self._get_connection() as conn:
            conn.execute("""
              CREATE TABLE IF NOT EXISTS seen_events (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT NOT NULL,
                scheduled_at TEXT NOT NULL,
                source_url TEXT NOT NULL,
                raw_hash TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_notified_at TEXT
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS deliveries (
                event_id TEXT NOT NULL REFERENCES seen_events(id),
                channel TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (event_id, channel)
              )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_deliveries_status ON deliveries(status)")

    def diff(
        self,
        events: Sequence[Event],
        channels: Iterable[str] = (),
        renotify: str = "all",
    ) -> CycleResult:
        """Classify ``events`` against what is stored and commit the result.

        New events are inserted and every channel in ``channels`` is set to
        pending. Updated events are rewritten; under ``renotify="all"`` every
        channel goes back to pending, under ``"undelivered"`` only channels
        that have not delivered yet do.
        """
        channels = list(channels)
        now = utcnow().isoformat()
        result = CycleResult()
        with self._write_lock, self._get_connection() as conn:
            for ev in events:
                row = conn.execute(
                    "SELECT raw_hash FROM seen_events WHERE id = ?", (ev.id,)
                ).fetchone()
                params = (ev.title, ev.category, ev.scheduled_at.isoformat(),
                          ev.source_url, ev.raw_hash)
                if row is None:
                    conn.execute(
                        """
                        INSERT INTO seen_events (
                          title, category, scheduled_at, source_url, raw_hash,
                          id, first_seen_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        params + (ev.id, now, now),
                    )
                    self._set_pending(conn, ev.id, channels, now, only_undelivered=False)
                    result.new.append(ev)
                elif row[0] != ev.raw_hash:
                    conn.execute(
                        """
                        UPDATE seen_events
                           SET title = ?, category = ?, scheduled_at = ?,
                               source_url = ?, raw_hash = ?, updated_at = ?
                         WHERE id = ?
                        """,
                        params + (now, ev.id),
                    )
                    self._set_pending(conn, ev.id, channels, now,
                                      only_undelivered=(renotify == "undelivered"))
                    result.updated.append(ev)
                else:
                    result.unchanged.append(ev)
        return result

    @staticmethod
    def _set_pending(conn: sqlite3.Connection, event_id: str, channels: Sequence[str],
                     now: str, *, only_undelivered: bool) -> None:
        if only_undelivered:
            sql = """
                INSERT INTO deliveries (event_id, channel, status, updated_at)
                VALUES (?, ?, 'pending', ?)
                ON CONFLICT(event_id, channel) DO UPDATE SET
                  status = 'pending', updated_at = excluded.updated_at
                WHERE deliveries.status <> 'delivered'
            """
        else:
            sql = """
                INSERT INTO deliveries (event_id, channel, status, updated_at)
                VALUES (?, ?, 'pending', ?)
                ON CONFLICT(event_id, channel) DO UPDATE SET
                  status = 'pending', updated_at = excluded.updated_at
            """
        conn.executemany(sql, [(event_id, ch, now) for ch in channels])

    def record_delivery(self, event_id: str, channel: str, outcome: str) -> bool:
        """Set the delivery status of one (event, channel) pair.

        Returns False when the pair already holds ``outcome``.
        """
        if outcome not in STATUSES:
            raise ValueError(f"Unknown delivery status: {outcome!r}")
        now = utcnow().isoformat()
        with self._write_lock, self._get_connection() as conn:
            if conn.execute("SELECT 1 FROM seen_events WHERE id = ?", (event_id,)).fetchone() is None:
                raise KeyError(event_id)
            row = conn.execute(
                "SELECT status FROM deliveries WHERE event_id = ? AND channel = ?",
                (event_id, channel),
            ).fetchone()
            if row is not None and row[0] == outcome:
                return False
            conn.execute(
                """
                INSERT INTO deliveries (event_id, channel, status, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(event_id, channel) DO UPDATE SET
                  status = excluded.status, updated_at = excluded.updated_at
                """,
                (event_id, channel, outcome, now),
            )
            if outcome == DELIVERED:
                conn.execute(
                    "UPDATE seen_events SET last_notified_at = ? WHERE id = ?",
                    (now, event_id),
                )
            return True

    def _statuses(self, conn: sqlite3.Connection, event_id: str) -> Dict[str, str]:
        cur = conn.execute(
            "SELECT channel, status FROM deliveries WHERE event_id = ? ORDER BY channel",
            (event_id,),
        )
        return {ch: st for ch, st in cur.fetchall()}

    def get(self, event_id: str) -> Optional[SeenEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT id, first_seen_at, raw_hash, last_notified_at FROM seen_events WHERE id = ?",
                (event_id,),
            ).fetchone()
            if row is None:
                return None
            return SeenEntry(
                id=row[0],
                first_seen_at=_ts(row[1]),
                raw_hash=row[2],
                last_notified_at=_ts(row[3]),
                delivery_status=self._statuses(conn, row[0]),
            )

    def iter_entries(self) -> Iterator[SeenEntry]:
        """Yield every stored entry, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT id, first_seen_at, raw_hash, last_notified_at FROM seen_events ORDER BY first_seen_at, id"
            ).fetchall()
            statuses: Dict[str, Dict[str, str]] = {}
            for event_id, channel, status in conn.execute("SELECT event_id, channel, status FROM deliveries"):
                statuses.setdefault(event_id, {})[channel] = status
        for event_id, first_seen, raw_hash, last_notified in rows:
            yield SeenEntry(
                id=event_id,
                first_seen_at=_ts(first_seen),
                raw_hash=raw_hash,
                last_notified_at=_ts(last_notified),
                delivery_status=statuses.get(event_id, {}),
            )

    def pending_deliveries(self, channels: Iterable[str]) -> Dict[str, Tuple[Event, Set[str]]]:
        """Pairs still pending for the given channels, keyed by event id."""
        channels = list(channels)
        if not channels:
            return {}
        marks = ", ".join("?" for _ in channels)
        with self._get_connection() as conn:
            cur = conn.execute(
                f"""
                SELECT e.id, e.title, e.category, e.scheduled_at, e.source_url, e.raw_hash, d.channel
                  FROM deliveries d JOIN seen_events e ON e.id = d.event_id
                 WHERE d.status = 'pending' AND d.channel IN ({marks})
                 ORDER BY e.first_seen_at, e.id
                """,
                channels,
            )
            pending: Dict[str, Tuple[Event, Set[str]]] = {}
            for event_id, title, category, scheduled_at, source_url, raw_hash, channel in cur.fetchall():
                if event_id not in pending:
                    ev = Event(
                        id=event_id,
                        title=title,
                        category=category,
                        scheduled_at=_dt.datetime.fromisoformat(scheduled_at),
                        source_url=source_url,
                        raw_hash=raw_hash,
                    )
                    pending[event_id] = (ev, set())
                pending[event_id][1].add(channel)
            return pending


__all__ = [
    "EventStore",
    "SeenEntry",
    "CycleResult",
    "PENDING",
    "DELIVERED",
    "FAILED",
]
