"""Background settlement scanner.

Periodically asks the mirror for bets past their closing time that have no
winner yet and hands each one to the submitter, one at a time and oldest
deadline first. Unjoined bets are submitted too: the contract decides
whether closing them is valid, and a revert is an expected outcome.

Nothing here writes to the mirror. A confirmed closeBet shows up later as a
BetClosed event through the listener; until then the bet stays settleable,
so confirmed ids are skipped for a grace period instead of being submitted
again. Rejected ids are held back for a cool-down and do not count against
the per-scan cap.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from futures_mirror.config import settings
from futures_mirror.exceptions import StoreError
from futures_mirror.schemas import SettlementAttempt, SettlementOutcome
from futures_mirror.store import EventStore
from futures_mirror.submitter import SettlementSubmitter

logger = logging.getLogger(__name__)


class SettlementScanner:
    """Daemon thread that settles overdue bets."""

    def __init__(
        self,
        store: EventStore,
        submitter: SettlementSubmitter,
        interval: float | None = None,
        max_per_scan: int | None = None,
        confirm_grace: float | None = None,
        reject_backoff: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._submitter = submitter
        self._interval = interval if interval is not None else settings.scan_interval_seconds
        self._max_per_scan = max_per_scan if max_per_scan is not None else settings.max_per_scan
        self._confirm_grace = (
            confirm_grace if confirm_grace is not None else settings.confirm_grace_seconds
        )
        self._reject_backoff = (
            reject_backoff if reject_backoff is not None else settings.reject_backoff_seconds
        )
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_scan_at: datetime | None = None
        self._last_settleable_count: int = 0
        # bet id -> clock time of its confirmed closeBet
        self._confirmed_at: dict[int, float] = {}
        # bet id -> clock time of its last rejected closeBet
        self._rejected_at: dict[int, float] = {}
        self._outcomes: dict[str, int] = {outcome.value: 0 for outcome in SettlementOutcome}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_scan_at(self) -> datetime | None:
        return self._last_scan_at

    @property
    def last_settleable_count(self) -> int:
        return self._last_settleable_count

    def start(self) -> None:
        """Start the scanner background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="settlement-scanner")
        self._thread.start()
        logger.info(
            "Settlement scanner started (interval=%.1fs, max_per_scan=%s, grace=%.1fs)",
            self._interval,
            self._max_per_scan or "unlimited",
            self._confirm_grace,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the scanner to stop and wait up to *timeout* seconds.

        An in-flight receipt wait is abandoned if it outlasts the timeout;
        its outcome reaches the mirror through the listener regardless.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Settlement scanner stopped")

    def status(self) -> dict:
        """Return a snapshot of the scanner's state."""
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "max_per_scan": self._max_per_scan,
            "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
            "last_settleable_count": self._last_settleable_count,
            "awaiting_close_event": len(self._confirmed_at),
            "rejected_backing_off": len(self._rejected_at),
            "outcomes": dict(self._outcomes),
        }

    def scan_once(self) -> list[SettlementAttempt]:
        """Run one scan synchronously and return the attempts made."""
        return self._tick()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except (SQLAlchemyError, StoreError) as exc:
                logger.warning("Settlement scan could not read the mirror, retrying next tick: %s", exc)
            except Exception:
                logger.exception("Settlement scan failed")
            self._stop_event.wait(timeout=self._interval)

    def _tick(self) -> list[SettlementAttempt]:
        now = self._clock()
        settleable = self._store.list_settleable(int(now))
        self._last_scan_at = datetime.now(timezone.utc)
        self._last_settleable_count = len(settleable)

        # Forget confirmations that the mirror has caught up with or that outlived the grace period.
        pending_ids = {a.id for a in settleable}
        self._confirmed_at = {
            bet_id: at
            for bet_id, at in self._confirmed_at.items()
            if bet_id in pending_ids and now - at < self._confirm_grace
        }

        self._rejected_at = {
            bet_id: at
            for bet_id, at in self._rejected_at.items()
            if bet_id in pending_ids and now - at < self._reject_backoff
        }

        # Held-back ids are dropped before the cap is applied.
        candidates = [
            a
            for a in settleable
            if a.id not in self._confirmed_at and a.id not in self._rejected_at
        ]
        if not candidates:
            return []

        if self._max_per_scan and len(candidates) > self._max_per_scan:
            logger.info(
                "%d bets settleable, submitting the %d oldest this scan",
                len(candidates),
                self._max_per_scan,
            )
            candidates = candidates[: self._max_per_scan]

        attempts: list[SettlementAttempt] = []
        for agreement in candidates:
            if self._stop_event.is_set():
                break
            if agreement.counterparty is None:
                logger.debug("Bet %d was never joined, submitting anyway", agreement.id)
            attempt = self._submitter.submit(agreement.id)
            self._outcomes[attempt.outcome.value] += 1
            if attempt.outcome == SettlementOutcome.CONFIRMED:
                self._confirmed_at[agreement.id] = self._clock()
            elif attempt.outcome == SettlementOutcome.REJECTED:
                self._rejected_at[agreement.id] = self._clock()
            attempts.append(attempt)
        return attempts
