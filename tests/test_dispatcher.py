"""Tests for dps_event_notifier.dispatcher."""

from __future__ import annotations

import threading

import pytest

from dps_event_notifier.channels import Delivered, Permanent, Retryable
from dps_event_notifier.db import DELIVERED, FAILED, PENDING
from dps_event_notifier.dispatcher import (DeliveryState, Dispatcher, RetryPolicy,
                                           summarize)
from dps_event_notifier.errors import RateLimitExceeded
from tests.fakes import FakeChannel

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)


def _dispatcher(store, **kwargs) -> Dispatcher:
    kwargs.setdefault("channel_rate", 1000.0)
    kwargs.setdefault("channel_burst", 1000)
    return Dispatcher(store, kwargs.pop("retry", NO_WAIT), **kwargs)


class TestRetryPolicy:
    """Back-off arithmetic."""

    def test_exponential_and_capped(self) -> None:
        """Delays double and stop at max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, multiplier=2.0, jitter=0.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_band(self) -> None:
        """Jitter moves the delay by at most the configured fraction."""
        policy = RetryPolicy(base_delay=10.0, max_delay=60.0, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= policy.delay(1) <= 11.0


class TestDispatchOutcomes:
    """Per-pair state machine."""

    def test_success_records_delivered(self, store, make_event) -> None:
        """A Delivered outcome is terminal and written to the store."""
        ev = make_event()
        store.diff([ev], ["email"])
        email = FakeChannel("email")

        attempts = _dispatcher(store).dispatch([ev], [email])

        assert [(a.attempt_number, a.state) for a in attempts] == [(1, DeliveryState.DELIVERED)]
        assert store.get("A1").delivery_status == {"email": DELIVERED}

    def test_retryable_exhaustion_fails_only_that_pair(self, store, make_event) -> None:
        """N Retryable outcomes mark the pair failed; other channels deliver."""
        ev = make_event()
        store.diff([ev], ["email", "messaging"])
        flaky = FakeChannel("messaging", [Retryable("HTTP 503")])
        email = FakeChannel("email")

        attempts = _dispatcher(store).dispatch([ev], [email, flaky])

        assert len(flaky.sent) == NO_WAIT.max_attempts
        retried = [a for a in attempts if a.channel == "messaging"]
        assert [a.state for a in retried] == [
            DeliveryState.RETRYING, DeliveryState.RETRYING, DeliveryState.FAILED,
        ]
        assert retried[0].next_retry_at is not None
        assert store.get("A1").delivery_status == {"email": DELIVERED, "messaging": FAILED}

    def test_retry_then_success(self, store, make_event) -> None:
        """A transient failure followed by success ends delivered."""
        ev = make_event()
        store.diff([ev], ["email"])
        email = FakeChannel("email", [Retryable("timeout"), Delivered()])

        attempts = _dispatcher(store).dispatch([ev], [email])

        assert [a.state for a in attempts] == [DeliveryState.RETRYING, DeliveryState.DELIVERED]
        assert store.get("A1").delivery_status["email"] == DELIVERED

    def test_permanent_is_not_retried(self, store, make_event) -> None:
        """Permanent outcomes fail on the first attempt."""
        ev = make_event()
        store.diff([ev], ["email"])
        email = FakeChannel("email", [Permanent("invalid recipient")])

        attempts = _dispatcher(store).dispatch([ev], [email])

        assert len(email.sent) == 1
        assert attempts[-1].state is DeliveryState.FAILED
        assert store.get("A1").delivery_status["email"] == FAILED

    def test_adapter_exception_counts_as_retryable(self, store, make_event) -> None:
        """An adapter that raises is retried, then failed."""
        ev = make_event()
        store.diff([ev], ["pdf"])

        class Broken:
            name = "pdf"
            calls = 0

            def send(self, event):
                Broken.calls += 1
                raise RuntimeError("boom")

        attempts = _dispatcher(store).dispatch([ev], [Broken()])
        assert Broken.calls == NO_WAIT.max_attempts
        assert isinstance(attempts[0].outcome, Retryable)
        assert store.get("A1").delivery_status["pdf"] == FAILED

    def test_rate_limit_ceiling_is_retryable(self, store, make_event) -> None:
        """A channel bucket that cannot serve in time yields Retryable."""
        ev = make_event()
        store.diff([ev], ["email"])

        class Exhausted:
            def acquire(self):
                raise RateLimitExceeded(10.0, 1.0)

        email = FakeChannel("email")
        attempts = _dispatcher(store, limiters={"email": Exhausted()}).dispatch([ev], [email])
        assert email.sent == []
        assert all(isinstance(a.outcome, Retryable) for a in attempts)
        assert store.get("A1").delivery_status["email"] == FAILED


class TestDispatchFanOut:
    """Selection of pairs and isolation between them."""

    def test_targets_limit_channels(self, store, make_event) -> None:
        """Only the channels named in targets are used."""
        a, b = make_event("A1"), make_event("B2", title="Other")
        store.diff([a, b], ["email", "pdf"])
        email, pdf = FakeChannel("email"), FakeChannel("pdf")

        _dispatcher(store).dispatch([a, b], [email, pdf], targets={"A1": {"pdf"}})

        assert [e.id for e in pdf.sent] == ["A1"]
        assert email.sent == []

    def test_empty_input(self, store) -> None:
        """Nothing to send means no attempts."""
        assert _dispatcher(store).dispatch([], [FakeChannel("email")]) == []

    def test_slow_channel_does_not_hold_up_others(self, store, make_event) -> None:
        """Email finishes every event while the webhook is stuck on its first."""
        events = [make_event(f"E{i}", title=f"Event {i}") for i in range(8)]
        store.diff(events, ["email", "messaging"])
        release = threading.Event()
        emails_done = threading.Event()

        def on_email(event):
            if len(email.sent) == len(events):
                emails_done.set()

        email = FakeChannel("email", on_send=on_email)
        webhook = FakeChannel("messaging", on_send=lambda e: release.wait(5))
        worker = threading.Thread(
            target=_dispatcher(store, max_workers=2).dispatch, args=(events, [email, webhook])
        )
        worker.start()
        try:
            assert emails_done.wait(2)
            assert len(webhook.sent) == 1
        finally:
            release.set()
            worker.join(10)

        assert not worker.is_alive()
        for ev in events:
            assert store.get(ev.id).delivery_status == {"email": DELIVERED, "messaging": DELIVERED}

    def test_backoff_does_not_block_channel_queue(self, store, make_event) -> None:
        """Other events go out on a channel while one waits to retry."""
        a, b = make_event("A1"), make_event("B2", title="Other")
        store.diff([a, b], ["messaging"])

        class FlakyFirst(FakeChannel):
            def send(self, event):
                super().send(event)
                first_try = [e.id for e in self.sent].count(event.id) == 1
                return Retryable("HTTP 503") if event.id == "A1" and first_try else Delivered()

        webhook = FlakyFirst("messaging")
        retry = RetryPolicy(max_attempts=3, base_delay=0.05, max_delay=0.05, jitter=0.0)

        _dispatcher(store, retry=retry).dispatch([a, b], [webhook])

        assert [e.id for e in webhook.sent] == ["A1", "B2", "A1"]
        assert store.get("A1").delivery_status["messaging"] == DELIVERED

    def test_one_event_failure_does_not_block_others(self, store, make_event) -> None:
        """A permanent failure for one event leaves the others delivered."""
        a, b = make_event("A1"), make_event("B2", title="Other")
        store.diff([a, b], ["email"])

        class PickyEmail(FakeChannel):
            def send(self, event):
                super().send(event)
                return Permanent("bad") if event.id == "A1" else Delivered()

        _dispatcher(store).dispatch([a, b], [PickyEmail("email")])
        assert store.get("A1").delivery_status["email"] == FAILED
        assert store.get("B2").delivery_status["email"] == DELIVERED


class TestCancellation:
    """Shutdown during back-off."""

    def test_cancel_abandons_retry_and_leaves_pending(self, store, make_event) -> None:
        """A cancelled back-off stops retrying and writes nothing."""
        ev = make_event()
        store.diff([ev], ["messaging"])
        cancel = threading.Event()
        slow = RetryPolicy(max_attempts=5, base_delay=30.0, max_delay=30.0, jitter=0.0)
        webhook = FakeChannel("messaging", [Retryable("HTTP 502")], on_send=lambda e: cancel.set())

        attempts = _dispatcher(store, retry=slow, cancel=cancel).dispatch([ev], [webhook])

        assert len(webhook.sent) == 1
        assert attempts[-1].state is DeliveryState.ABANDONED
        assert store.get("A1").delivery_status["messaging"] == PENDING

    def test_cancel_before_start(self, store, make_event) -> None:
        """Pairs not yet started are abandoned without calling the adapter."""
        ev = make_event()
        store.diff([ev], ["email"])
        cancel = threading.Event()
        cancel.set()
        email = FakeChannel("email")

        attempts = _dispatcher(store, cancel=cancel).dispatch([ev], [email])

        assert email.sent == []
        assert summarize(attempts).abandoned == 1


class TestSummarize:
    """Counting terminal outcomes."""

    def test_counts_last_state_per_pair(self, store, make_event) -> None:
        """Retries count once, by their final state."""
        ev = make_event()
        store.diff([ev], ["email", "pdf"])
        email = FakeChannel("email", [Retryable("x"), Delivered()])
        pdf = FakeChannel("pdf", [Permanent("no")])

        summary = summarize(_dispatcher(store).dispatch([ev], [email, pdf]))

        assert (summary.delivered, summary.failed, summary.abandoned) == (1, 1, 0)


@pytest.mark.parametrize("state,terminal", [
    (DeliveryState.DELIVERED, True),
    (DeliveryState.FAILED, True),
    (DeliveryState.RETRYING, False),
    (DeliveryState.ABANDONED, False),
])
def test_terminal_states(state, terminal) -> None:
    """Only delivered and failed are terminal."""
    assert state.terminal is terminal
