"""Tests for the settlement submitter and scanner."""

from __future__ import annotations

import time

import pytest

from futures_mirror.scanner import SettlementScanner
from futures_mirror.schemas import SettlementOutcome
from futures_mirror.submitter import SettlementSubmitter

from ledger_fakes import FakeLedger, closed, joined, opened


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _scanner(store, ledger, clock, **kw) -> SettlementScanner:
    params = dict(interval=60.0, max_per_scan=0, confirm_grace=30.0, clock=clock)
    params.update(kw)
    return SettlementScanner(store, SettlementSubmitter(ledger, receipt_timeout=1.0), **params)


# ---------------------------------------------------------------------------
# Submitter
# ---------------------------------------------------------------------------


class TestSubmitter:
    def test_confirmed(self, ledger):
        attempt = SettlementSubmitter(ledger).submit(3)
        assert attempt.outcome == SettlementOutcome.CONFIRMED
        assert attempt.tx_hash.startswith("0x")
        assert attempt.completed_at >= attempt.started_at
        assert ledger.close_calls == [3]

    def test_contract_rejection_is_not_an_error(self, ledger):
        ledger.outcomes[3] = "reject"
        attempt = SettlementSubmitter(ledger).submit(3)
        assert attempt.outcome == SettlementOutcome.REJECTED
        assert attempt.reason == "Bet is not active"
        assert attempt.tx_hash is None

    def test_transient_failure(self, ledger):
        ledger.outcomes[3] = "transient"
        attempt = SettlementSubmitter(ledger).submit(3)
        assert attempt.outcome == SettlementOutcome.TRANSIENT
        assert "timed out" in attempt.reason

    def test_submitter_never_writes_the_mirror(self, store, ledger):
        store.upsert_opened(opened(3))
        SettlementSubmitter(ledger).submit(3)
        assert store.get(3).winner is None


# ---------------------------------------------------------------------------
# Scanner tick
# ---------------------------------------------------------------------------


class TestScannerTick:
    def test_nothing_due(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=2_000))
        scanner = _scanner(store, ledger, _Clock(1_000))
        assert scanner.scan_once() == []
        assert ledger.close_calls == []
        assert scanner.last_settleable_count == 0
        assert scanner.last_scan_at is not None

    def test_submits_sequentially_oldest_first(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=300))
        store.upsert_opened(opened(2, closing_time=100))
        store.upsert_opened(opened(3, closing_time=5_000))
        scanner = _scanner(store, ledger, _Clock(1_000))

        attempts = scanner.scan_once()
        assert [a.agreement_id for a in attempts] == [2, 1]
        assert ledger.close_calls == [2, 1]

    def test_settled_bets_not_submitted(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        store.apply_closed(closed(1))
        scanner = _scanner(store, ledger, _Clock(1_000))
        assert scanner.scan_once() == []
        assert ledger.close_calls == []

    @pytest.mark.parametrize(
        "outcome, expected",
        [
            ("confirm", SettlementOutcome.CONFIRMED),
            ("reject", SettlementOutcome.REJECTED),
            ("transient", SettlementOutcome.TRANSIENT),
        ],
    )
    def test_unjoined_bet_is_submitted_and_mirror_untouched(self, store, ledger, outcome, expected):
        store.upsert_opened(opened(1, closing_time=100))
        snapshot = store.get(1)
        ledger.outcomes[1] = outcome
        scanner = _scanner(store, ledger, _Clock(1_000))

        [attempt] = scanner.scan_once()
        assert attempt.outcome == expected
        assert store.get(1) == snapshot
        assert scanner.status()["outcomes"][expected.value] == 1

    def test_transient_failure_retried_next_tick(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        ledger.outcomes[1] = "transient"
        scanner = _scanner(store, ledger, _Clock(1_000))
        scanner.scan_once()
        ledger.outcomes[1] = "confirm"
        [attempt] = scanner.scan_once()
        assert attempt.outcome == SettlementOutcome.CONFIRMED
        assert ledger.close_calls == [1, 1]

    def test_max_per_scan_caps_submissions(self, store, ledger):
        for bet_id, closing in ((1, 100), (2, 200), (3, 300)):
            store.upsert_opened(opened(bet_id, closing_time=closing))
        ledger.outcomes.update({1: "reject", 2: "reject", 3: "reject"})
        scanner = _scanner(store, ledger, _Clock(1_000), max_per_scan=2)
        assert [a.agreement_id for a in scanner.scan_once()] == [1, 2]

    def test_rejected_bets_do_not_starve_capped_scan(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        store.upsert_opened(opened(2, closing_time=200))
        store.upsert_opened(opened(3, closing_time=300))
        store.apply_joined(joined(3))
        ledger.outcomes.update({1: "reject", 2: "reject"})
        scanner = _scanner(store, ledger, _Clock(1_000), max_per_scan=2)

        for _ in range(10):
            scanner.scan_once()
        assert ledger.close_calls[:3] == [1, 2, 3]
        assert ledger.close_calls.count(1) == 1
        assert scanner.status()["rejected_backing_off"] == 2

    def test_rejected_bet_retried_after_backoff(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        ledger.outcomes[1] = "reject"
        clock = _Clock(1_000)
        scanner = _scanner(store, ledger, clock, reject_backoff=120.0)

        scanner.scan_once()
        clock.now += 60
        assert scanner.scan_once() == []
        clock.now += 61
        [attempt] = scanner.scan_once()
        assert attempt.outcome == SettlementOutcome.REJECTED
        assert ledger.close_calls == [1, 1]


# ---------------------------------------------------------------------------
# Confirmation grace period
# ---------------------------------------------------------------------------


class TestConfirmGrace:
    def test_confirmed_bet_not_resubmitted_within_grace(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        clock = _Clock(1_000)
        scanner = _scanner(store, ledger, clock, confirm_grace=30.0)

        scanner.scan_once()
        clock.now += 10
        assert scanner.scan_once() == []
        assert ledger.close_calls == [1]
        assert scanner.status()["awaiting_close_event"] == 1

    def test_resubmitted_after_grace_if_mirror_never_caught_up(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        clock = _Clock(1_000)
        scanner = _scanner(store, ledger, clock, confirm_grace=30.0)

        scanner.scan_once()
        clock.now += 31
        scanner.scan_once()
        assert ledger.close_calls == [1, 1]

    def test_grace_entry_dropped_once_mirror_settles(self, store, ledger):
        store.upsert_opened(opened(1, closing_time=100))
        scanner = _scanner(store, ledger, _Clock(1_000))
        scanner.scan_once()
        store.apply_closed(closed(1))
        scanner.scan_once()
        assert scanner.status()["awaiting_close_event"] == 0


# ---------------------------------------------------------------------------
# Scanner lifecycle
# ---------------------------------------------------------------------------


class TestScannerLifecycle:
    def test_start_and_stop(self, store, ledger):
        scanner = _scanner(store, ledger, time.time, interval=0.05)
        assert not scanner.running
        scanner.start()
        assert scanner.running
        scanner.stop(timeout=2.0)
        assert not scanner.running

    def test_double_start_is_idempotent(self, store, ledger):
        scanner = _scanner(store, ledger, time.time, interval=0.05)
        scanner.start()
        scanner.start()
        assert scanner.running
        scanner.stop(timeout=2.0)

    def test_background_scan_settles_overdue_bet(self, store):
        ledger = FakeLedger()
        store.upsert_opened(opened(1, closing_time=100))
        store.apply_joined(joined(1))
        scanner = _scanner(store, ledger, time.time, interval=0.05)
        scanner.start()
        deadline = time.monotonic() + 5.0
        while not ledger.close_calls and time.monotonic() < deadline:
            time.sleep(0.01)
        scanner.stop(timeout=2.0)
        assert ledger.close_calls[0] == 1
        assert scanner.status()["last_scan_at"] is not None

    def test_store_read_failure_does_not_kill_loop(self, store, ledger):
        scanner = _scanner(store, ledger, time.time, interval=0.05)
        store.close()
        scanner.start()
        time.sleep(0.15)
        assert scanner.running
        scanner.stop(timeout=2.0)

    def test_status_before_scan(self, store, ledger):
        status = _scanner(store, ledger, time.time).status()
        assert status["running"] is False
        assert status["last_scan_at"] is None
        assert status["last_settleable_count"] == 0
        assert status["outcomes"] == {"confirmed": 0, "rejected": 0, "transient": 0}
