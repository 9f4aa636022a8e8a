"""One fetch -> normalize -> diff -> dispatch cycle."""

from __future__ import annotations

import datetime as _dt
import logging
from dataclasses import replace
from typing import Dict, List, Sequence, Set

from .channels import Channel
from .db import EventStore
from .dispatcher import Dispatcher, summarize
from .normalizer import Event, normalize_all
from .scheduler import CycleReport
from .scraper import PortalClient
from .utils import utcnow

logger = logging.getLogger(__name__)


class EventMonitor:
    """Wires the portal client, store and dispatcher into a cycle.

    Portal and parse errors propagate to the caller (the scheduler) before
    anything is written, so a cycle never diffs or dispatches on partial data.
    """

    def __init__(
        self,
        client: PortalClient,
        store: EventStore,
        dispatcher: Dispatcher,
        channels: Sequence[Channel],
        *,
        zone: _dt.tzinfo,
        renotify: str = "all",
    ):
        self.client = client
        self.store = store
        self.dispatcher = dispatcher
        self.channels = list(channels)
        self.zone = zone
        self.renotify = renotify

    def run_cycle(self) -> CycleReport:
        started = utcnow()
        raws = self.client.fetch_events()
        events = normalize_all(raws, self.zone, base_url=self.client.base_url)

        names = [ch.name for ch in self.channels]
        result = self.store.diff(events, names, renotify=self.renotify)
        logger.info(
            "Diff: %d new, %d updated, %d unchanged",
            len(result.new), len(result.updated), len(result.unchanged),
        )

        # Everything still pending: this cycle's new/updated pairs plus any
        # left behind by an earlier cycle that was cut short.
        pending = self.store.pending_deliveries(names)
        fresh = {ev.id: ev for ev in events}
        to_send: List[Event] = []
        targets: Dict[str, Set[str]] = {}
        for event_id, (event, chans) in pending.items():
            if event_id in fresh:
                event = fresh[event_id]
            else:
                event = replace(event, scheduled_at=event.scheduled_at.astimezone(self.zone))
            to_send.append(event)
            targets[event_id] = chans
        carried = len(set(pending) - {ev.id for ev in result.changed})
        if carried:
            logger.info("Resuming %d event(s) left pending by an earlier cycle", carried)

        attempts = self.dispatcher.dispatch(to_send, self.channels, targets) if to_send else []
        summary = summarize(attempts)

        return CycleReport(
            started_at=started,
            finished_at=utcnow(),
            ok=True,
            new=len(result.new),
            updated=len(result.updated),
            unchanged=len(result.unchanged),
            delivered=summary.delivered,
            failed_deliveries=summary.failed,
            abandoned=summary.abandoned,
        )


__all__ = ["EventMonitor"]
