"""Polling loop with a one-cycle-at-a-time guarantee.

The scheduler is ``idle`` or ``running``. Scheduled ticks and manual
triggers both try to take the run lock without blocking; if a cycle is
already in flight the tick is skipped (and logged) and the trigger reports
``already_running``. Nothing is ever queued.

A cycle that raises is logged and recorded as a failed ``CycleReport``;
the scheduler goes back to idle and the next tick runs as usual.
"""

from __future__ import annotations

import datetime as _dt
import enum
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from .errors import PortalError
from .utils import utcnow

logger = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class TriggerResult(str, enum.Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass
class CycleReport:
    started_at: _dt.datetime
    finished_at: Optional[_dt.datetime] = None
    ok: bool = True
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    delivered: int = 0
    failed_deliveries: int = 0
    abandoned: int = 0
    error: Optional[str] = None

    def as_dict(self) -> dict:
        d = asdict(self)
        d["started_at"] = self.started_at.isoformat()
        d["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return d


CycleFn = Callable[[], Optional[CycleReport]]


class Scheduler:
    def __init__(
        self,
        cycle_fn: CycleFn,
        *,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cycle_fn = cycle_fn
        self._clock = clock
        self.cancel = cancel or threading.Event()
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._manual_thread: Optional[threading.Thread] = None
        self.last_report: Optional[CycleReport] = None
        self.skipped_ticks = 0

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self._run_lock.locked() else SchedulerState.IDLE

    def _run_cycle(self) -> CycleReport:
        """Run one cycle. Caller holds the run lock."""
        started = utcnow()
        logger.info("Cycle started")
        try:
            report = self._cycle_fn() or CycleReport(started_at=started)
        except PortalError as e:
            logger.error("Cycle failed: %s: %s", type(e).__name__, e)
            report = CycleReport(started_at=started, ok=False, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Cycle crashed")
            report = CycleReport(started_at=started, ok=False, error=f"{type(e).__name__}: {e}")
        if report.finished_at is None:
            report.finished_at = utcnow()
        self.last_report = report
        if report.ok:
            logger.info(
                "Cycle finished: new=%d updated=%d unchanged=%d delivered=%d failed=%d abandoned=%d",
                report.new, report.updated, report.unchanged,
                report.delivered, report.failed_deliveries, report.abandoned,
            )
        return report

    def _try_run(self) -> Optional[CycleReport]:
        if not self._run_lock.acquire(blocking=False):
            return None
        try:
            return self._run_cycle()
        finally:
            self._run_lock.release()

    def trigger_now(self, wait: bool = False) -> TriggerResult:
        """Start a cycle immediately unless one is already running.

        With ``wait=False`` the cycle runs on its own thread and this returns
        at once.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Manual trigger ignored: a cycle is already running")
            return TriggerResult.ALREADY_RUNNING
        if wait:
            try:
                self._run_cycle()
            finally:
                self._run_lock.release()
            return TriggerResult.STARTED

        def _target() -> None:
            try:
                self._run_cycle()
            finally:
                self._run_lock.release()

        self._manual_thread = threading.Thread(target=_target, name="manual-cycle", daemon=True)
        self._manual_thread.start()
        return TriggerResult.STARTED

    def run_forever(self, interval: float) -> None:
        """Run a cycle every ``interval`` seconds until ``stop()``.

        The first cycle runs immediately. Ticks that fall due while a cycle
        is still running are dropped.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        logger.info("Scheduler running every %.0f seconds", interval)
        next_tick = self._clock()
        while not self._stop.is_set():
            now = self._clock()
            if now < next_tick:
                self._stop.wait(next_tick - now)
                continue

            if self._try_run() is None:
                self.skipped_ticks += 1
                logger.warning("Tick skipped: previous cycle still running")
            next_tick += interval

            now = self._clock()
            if now >= next_tick:
                missed = int((now - next_tick) // interval) + 1
                self.skipped_ticks += missed
                logger.warning("Cycle overran its interval; skipping %d tick(s)", missed)
                next_tick += missed * interval
        logger.info("Scheduler stopped")

    def start(self, interval: float) -> threading.Thread:
        """Run ``run_forever`` on a daemon thread."""
        self._stop.clear()
        self.cancel.clear()
        self._loop_thread = threading.Thread(
            target=self.run_forever, args=(interval,), name="scheduler", daemon=True
        )
        self._loop_thread.start()
        return self._loop_thread

    def stop(self, grace: Optional[float] = None) -> bool:
        """Stop ticking and cancel in-flight work.

        Adapter calls already in progress may finish within ``grace``
        seconds; pending retries are abandoned. Returns False if a thread is
        still alive when the grace period ends.
        """
        self._stop.set()
        self.cancel.set()
        deadline = None if grace is None else self._clock() + grace
        stopped = True
        for t in (self._loop_thread, self._manual_thread):
            if t is None or t is threading.current_thread():
                continue
            remaining = None if deadline is None else max(0.0, deadline - self._clock())
            t.join(remaining)
            stopped = stopped and not t.is_alive()
        if not stopped:
            logger.warning("Cycle still running after %.1fs grace; abandoning it", grace or 0.0)
        return stopped

    def health(self) -> dict:
        return {
            "state": self.state.value,
            "skipped_ticks": self.skipped_ticks,
            "last_cycle": self.last_report.as_dict() if self.last_report else None,
        }


__all__ = ["Scheduler", "SchedulerState", "TriggerResult", "CycleReport"]
