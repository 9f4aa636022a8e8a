"""Fan new events out to the notification channels.

Each (event, channel) pair runs its own small state machine::

    pending -> attempting -> delivered
                          -> retrying -> attempting ...
                          -> failed            (permanent, or retries used up)
               retrying   -> abandoned         (cancelled during back-off)

Every channel runs as its own lane on a thread pool: sends within a lane
are serial and paced by that channel's token bucket, while lanes run side
by side, so a slow webhook holds up only webhook deliveries. A pair in
back-off goes back on its lane's queue until due, letting the lane's other
events proceed. Back-off waits on the cancel event, so shutdown cuts the
wait short.

Only terminal outcomes reach the store. An abandoned pair stays ``pending``
there and is picked up by the next cycle.
"""

from __future__ import annotations

import datetime as _dt
import enum
import heapq
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .channels import Channel, Delivered, Outcome, Permanent, Retryable
from .db import DELIVERED, FAILED, EventStore
from .errors import RateLimitExceeded
from .normalizer import Event
from .ratelimit import TokenBucket
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Back-off for Retryable outcomes.

    Attributes:
        max_attempts: Total attempts per pair, first try included.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap on any single delay.
        multiplier: Growth factor between retries.
        jitter: Random +/- fraction applied to each delay.
    """
    max_attempts: int = 4
    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-indexed) failed attempt."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)


class DeliveryState(str, enum.Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryState.DELIVERED, DeliveryState.FAILED)


@dataclass
class DeliveryAttempt:
    event_id: str
    channel: str
    attempt_number: int
    outcome: Optional[Outcome]
    state: DeliveryState
    next_retry_at: Optional[_dt.datetime] = None


@dataclass
class DispatchSummary:
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0


def summarize(attempts: Iterable[DeliveryAttempt]) -> DispatchSummary:
    """Count pairs by the state of their last attempt."""
    last: Dict[tuple, DeliveryAttempt] = {}
    for a in attempts:
        last[(a.event_id, a.channel)] = a
    summary = DispatchSummary()
    for a in last.values():
        if a.state is DeliveryState.DELIVERED:
            summary.delivered += 1
        elif a.state is DeliveryState.FAILED:
            summary.failed += 1
        else:
            summary.abandoned += 1
    return summary


class Dispatcher:
    def __init__(
        self,
        store: EventStore,
        retry: Optional[RetryPolicy] = None,
        *,
        limiters: Optional[Mapping[str, TokenBucket]] = None,
        max_workers: int = 8,
        cancel: Optional[threading.Event] = None,
        channel_rate: float = 1.0,
        channel_burst: int = 5,
        channel_max_wait: Optional[float] = 30.0,
    ):
        self.store = store
        self.retry = retry or RetryPolicy()
        self.max_workers = max(1, max_workers)
        self.cancel = cancel or threading.Event()
        self._limiters: Dict[str, TokenBucket] = dict(limiters or {})
        self._channel_rate = channel_rate
        self._channel_burst = channel_burst
        self._channel_max_wait = channel_max_wait
        self._registry_lock = threading.Lock()

    def _limiter_for(self, channel: str) -> TokenBucket:
        with self._registry_lock:
            if channel not in self._limiters:
                self._limiters[channel] = TokenBucket(
                    self._channel_rate, self._channel_burst, self._channel_max_wait
                )
            return self._limiters[channel]

    def _attempt(self, event: Event, channel: Channel) -> Outcome:
        try:
            self._limiter_for(channel.name).acquire()
        except RateLimitExceeded as e:
            return Retryable(str(e))
        try:
            return channel.send(event)
        except Exception as e:
            logger.exception("Channel %s raised while sending %s", channel.name, event.id)
            return Retryable(f"{type(e).__name__}: {e}")

    def _settle(self, event: Event, channel: Channel, number: int, outcome: Outcome) -> DeliveryAttempt:
        """Classify one attempt and write terminal states to the store."""
        if isinstance(outcome, Delivered):
            state = DeliveryState.DELIVERED
        elif isinstance(outcome, Permanent) or number >= self.retry.max_attempts:
            state = DeliveryState.FAILED
        else:
            state = DeliveryState.RETRYING
        attempt = DeliveryAttempt(event.id, channel.name, number, outcome, state)

        if state is DeliveryState.DELIVERED:
            self.store.record_delivery(event.id, channel.name, DELIVERED)
            logger.info("Delivered %s via %s (attempt %d)", event.id, channel.name, number)
        elif state is DeliveryState.FAILED:
            self.store.record_delivery(event.id, channel.name, FAILED)
            logger.error(
                "Delivery of %s via %s failed after %d attempt(s): %s",
                event.id, channel.name, number, outcome,
            )
        return attempt

    def _run_lane(self, channel: Channel, events: Sequence[Event]) -> Dict[str, List[DeliveryAttempt]]:
        """Deliver ``events`` through one channel, one send at a time.

        Pairs waiting out a back-off sit in a queue ordered by due time, so
        one event's retry never holds up the channel's other events.
        """
        history: Dict[str, List[DeliveryAttempt]] = {ev.id: [] for ev in events}
        start = time.monotonic()
        queue = [(start, seq, ev, 0) for seq, ev in enumerate(events)]
        heapq.heapify(queue)
        seq = len(queue)

        while queue:
            if self.cancel.is_set():
                logger.warning("Dispatch cancelled; leaving %d %s deliveries pending", len(queue), channel.name)
                for _, _, ev, _ in queue:
                    attempts = history[ev.id]
                    if attempts:
                        attempts[-1].state = DeliveryState.ABANDONED
                    else:
                        attempts.append(DeliveryAttempt(ev.id, channel.name, 0, None, DeliveryState.ABANDONED))
                break

            due = queue[0][0]
            remaining = due - time.monotonic()
            if remaining > 0:
                # returns early on cancel; the loop top records the abandonment
                self.cancel.wait(remaining)
                continue

            _, _, ev, number = heapq.heappop(queue)
            number += 1
            attempt = self._settle(ev, channel, number, self._attempt(ev, channel))
            history[ev.id].append(attempt)
            if attempt.state is not DeliveryState.RETRYING:
                continue

            delay = self.retry.delay(number)
            attempt.next_retry_at = utcnow() + _dt.timedelta(seconds=delay)
            logger.warning(
                "Attempt %d/%d of %s via %s failed: %s. Retrying in %.1fs",
                number, self.retry.max_attempts, ev.id, channel.name, attempt.outcome, delay,
            )
            heapq.heappush(queue, (time.monotonic() + delay, seq, ev, number))
            seq += 1
        return history

    def dispatch(
        self,
        events: Sequence[Event],
        channels: Sequence[Channel],
        targets: Optional[Mapping[str, Set[str]]] = None,
    ) -> List[DeliveryAttempt]:
        """Send every event through every channel.

        Each channel gets its own lane: sends within a channel are serial,
        lanes run side by side. ``targets`` narrows the channels per event
        id; events missing from it go to no channel. Returns every attempt
        made, in (event, channel) order.
        """
        lanes: Dict[str, List[Event]] = {}
        for ch in channels:
            lane = [
                ev for ev in events
                if targets is None or ch.name in targets.get(ev.id, set())
            ]
            if lane:
                lanes[ch.name] = lane
        if not lanes:
            return []

        by_name = {ch.name: ch for ch in channels}
        logger.info(
            "Dispatching %d deliveries over %d channel(s)",
            sum(len(lane) for lane in lanes.values()), len(lanes),
        )
        histories: Dict[str, Dict[str, List[DeliveryAttempt]]] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(lanes)),
                                thread_name_prefix="dispatch") as pool:
            futures = {name: pool.submit(self._run_lane, by_name[name], lane) for name, lane in lanes.items()}
            for name, fut in futures.items():
                try:
                    histories[name] = fut.result()
                except Exception:
                    logger.exception("Dispatch lane for %s crashed; its deliveries stay pending", name)

        results: List[DeliveryAttempt] = []
        for ev in events:
            for ch in channels:
                results.extend(histories.get(ch.name, {}).get(ev.id, []))
        return results


__all__ = [
    "Dispatcher",
    "RetryPolicy",
    "DeliveryState",
    "DeliveryAttempt",
    "DispatchSummary",
    "summarize",
]
