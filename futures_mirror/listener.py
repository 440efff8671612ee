"""Event listener: mirrors contract events into the store exactly once.

Two daemon threads connected by a bounded queue:

* the subscription thread polls the ledger for new logs, starting from the
  persisted cursor, and enqueues decoded events in ledger order;
* the apply thread is the single consumer and the single writer to the
  mirror.

Delivery is at-least-once (a restart replays the cursor's block, a
reconnect may replay more), so every store mutation is idempotent. A
Joined/Closed event for a bet the mirror has not seen opened yet is parked
and retried with exponential backoff; the retry budget running out is a
ConsistencyError, which stops the listener rather than letting it run with a
mirror that disagrees with the ledger.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from futures_mirror.config import settings
from futures_mirror.exceptions import (
    BetIdOutOfRange,
    ConsistencyError,
    DuplicateKey,
    LedgerUnavailable,
    StoreError,
    UnknownAgreement,
)
from futures_mirror.ledger_client import LedgerClient
from futures_mirror.notifier import notify_escalation
from futures_mirror.schemas import BetJoined, BetOpened, ContractEvent, EventPosition
from futures_mirror.store import EventStore

logger = logging.getLogger(__name__)


class ApplyResult(str, Enum):
    APPLIED = "applied"
    REPLAY = "replay"
    DEFERRED = "deferred"


@dataclass
class _Deferred:
    event: ContractEvent
    attempts: int
    due_at: float


def _sort_key(event: ContractEvent) -> tuple[int, int]:
    return event.position.as_tuple() if event.position is not None else (0, 0)


class EventListener:
    """Subscribe to the contract's events and apply them to the mirror."""

    def __init__(
        self,
        store: EventStore,
        client: LedgerClient,
        start_block: int | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        queue_size: int | None = None,
        retry_attempts: int | None = None,
        retry_initial: float | None = None,
        retry_max_delay: float | None = None,
        on_failure: Callable[[str, BaseException], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._client = client
        self._start_block = start_block if start_block is not None else settings.start_block
        self._batch_size = max(1, batch_size if batch_size is not None else settings.block_batch_size)
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval_seconds
        )
        self._retry_attempts = max(
            1, retry_attempts if retry_attempts is not None else settings.gap_retry_attempts
        )
        self._retry_initial = (
            retry_initial if retry_initial is not None else settings.gap_retry_initial_seconds
        )
        self._retry_max_delay = (
            retry_max_delay if retry_max_delay is not None else settings.gap_retry_max_delay_seconds
        )
        self._on_failure = on_failure
        self._clock = clock

        self._queue: queue.Queue[ContractEvent] = queue.Queue(
            maxsize=queue_size if queue_size is not None else settings.queue_size
        )
        self._stop_event = threading.Event()
        self._transport_thread: threading.Thread | None = None
        self._apply_thread: threading.Thread | None = None

        self._deferred: list[_Deferred] = []
        self._last_seen: EventPosition | None = None
        self._saved: EventPosition | None = None
        self._next_block: int = self._start_block
        self._failure: BaseException | None = None

        self._applied = 0
        self._replayed = 0
        self._reconnects = 0
        self._last_event_at: datetime | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(t is not None and t.is_alive() for t in (self._transport_thread, self._apply_thread))

    @property
    def failure(self) -> BaseException | None:
        return self._failure

    @property
    def deferred_count(self) -> int:
        return len(self._deferred)

    def start(self) -> None:
        """Resume from the persisted cursor and start both threads."""
        if self.running:
            return
        self._stop_event.clear()
        self._failure = None
        self._next_block = self._resume_block()

        self._apply_thread = threading.Thread(
            target=self._apply_loop, daemon=True, name="listener-apply"
        )
        self._transport_thread = threading.Thread(
            target=self._transport_loop, daemon=True, name="listener-subscription"
        )
        self._apply_thread.start()
        self._transport_thread.start()
        logger.info(
            "Event listener started (contract=%s, from_block=%d, batch=%d)",
            self._client.contract_address,
            self._next_block,
            self._batch_size,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal both threads to stop and wait up to *timeout* seconds for each."""
        self._stop_event.set()
        for thread in (self._transport_thread, self._apply_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)
        self._transport_thread = None
        self._apply_thread = None
        logger.info("Event listener stopped")

    def status(self) -> dict:
        return {
            "running": self.running,
            "failure": str(self._failure) if self._failure else None,
            "next_block": self._next_block,
            "cursor": self._saved.model_dump() if self._saved else None,
            "queue_depth": self._queue.qsize(),
            "deferred": len(self._deferred),
            "applied": self._applied,
            "replayed": self._replayed,
            "reconnects": self._reconnects,
            "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
        }

    def _resume_block(self) -> int:
        cursor = self._store.load_cursor()
        self._saved = cursor
        self._last_seen = cursor
        if cursor is None:
            return self._start_block
        # Re-read the cursor's block; the events already applied there replay as no-ops.
        return cursor.block_number

    def _fail(self, unit: str, exc: BaseException) -> None:
        self._failure = exc
        self._stop_event.set()
        logger.error("Event listener stopped on %s error: %s", unit, exc)
        notify_escalation("listener", exc)
        if self._on_failure is not None:
            self._on_failure("listener", exc)

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def process(self, event: ContractEvent, now: float | None = None) -> ApplyResult:
        """Apply one event to the mirror.

        Raises ConsistencyError when an ordering gap exhausts its retries.
        """
        now = self._clock() if now is None else now
        try:
            result = self._apply(event)
        except UnknownAgreement:
            self._defer(event, attempts=1, now=now)
            result = ApplyResult.DEFERRED

        self._note_position(event)
        if result == ApplyResult.APPLIED and isinstance(event, BetOpened):
            self._retry_for(event.bet_id, now)
        self._advance_cursor()
        return result

    def retry_deferred(self, now: float | None = None) -> int:
        """Retry parked events whose backoff has elapsed. Returns how many were applied."""
        now = self._clock() if now is None else now
        due = sorted(
            (d for d in self._deferred if d.due_at <= now), key=lambda d: _sort_key(d.event)
        )
        applied = 0
        for item in due:
            if self._retry(item, now):
                applied += 1
        self._advance_cursor()
        return applied

    def _apply(self, event: ContractEvent) -> ApplyResult:
        if isinstance(event, BetOpened):
            try:
                self._store.upsert_opened(event)
            except DuplicateKey:
                logger.debug("Replayed BetOpened for bet %d", event.bet_id)
                self._replayed += 1
                return ApplyResult.REPLAY
            logger.info(
                "Event BetOpened: bet %d by %s (%s %d, closes at %d)",
                event.bet_id,
                event.initiator,
                event.side.value,
                event.amount,
                event.closing_time,
            )
        elif isinstance(event, BetJoined):
            if not self._store.apply_joined(event):
                logger.debug("Replayed BetJoined for bet %d", event.bet_id)
                self._replayed += 1
                return ApplyResult.REPLAY
            logger.info("Event BetJoined: bet %d by %s", event.bet_id, event.counterparty)
        else:
            if not self._store.apply_closed(event):
                logger.debug("Replayed BetClosed for bet %d", event.bet_id)
                self._replayed += 1
                return ApplyResult.REPLAY
            logger.info("Event BetClosed: bet %d won by %s", event.bet_id, event.winner)

        self._applied += 1
        self._last_event_at = datetime.now(timezone.utc)
        return ApplyResult.APPLIED

    def _defer(self, event: ContractEvent, attempts: int, now: float) -> None:
        if attempts >= self._retry_attempts:
            raise ConsistencyError(
                f"{event.kind.value} still has no BetOpened after {attempts} attempts",
                bet_id=event.bet_id,
            )
        delay = min(self._retry_initial * (2 ** (attempts - 1)), self._retry_max_delay)
        self._deferred.append(_Deferred(event=event, attempts=attempts, due_at=now + delay))
        logger.info(
            "%s for unknown bet %d deferred (attempt %d/%d, retry in %.2fs)",
            event.kind.value,
            event.bet_id,
            attempts,
            self._retry_attempts,
            delay,
        )

    def _retry(self, item: _Deferred, now: float) -> bool:
        # Unpark only once the store has answered, so a failed write keeps the event.
        try:
            result = self._apply(item.event)
        except UnknownAgreement:
            self._deferred.remove(item)
            self._defer(item.event, attempts=item.attempts + 1, now=now)
            return False
        self._deferred.remove(item)
        return result == ApplyResult.APPLIED

    def _retry_for(self, bet_id: int, now: float) -> None:
        """BetOpened just landed: retry its parked Joined/Closed in ledger order."""
        parked = sorted(
            (d for d in self._deferred if d.event.bet_id == bet_id),
            key=lambda d: _sort_key(d.event),
        )
        for item in parked:
            self._retry(item, now)

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def _note_position(self, event: ContractEvent) -> None:
        if event.position is None:
            return
        if self._last_seen is None or self._last_seen < event.position:
            self._last_seen = event.position

    def _advance_cursor(self) -> None:
        # Hold the cursor while anything is parked so a restart re-reads it.
        if self._deferred or self._last_seen is None or self._last_seen == self._saved:
            return
        self._store.save_cursor(self._last_seen)
        self._saved = self._last_seen

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _transport_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    head = self._client.latest_block()
                    if self._next_block > head:
                        self._stop_event.wait(timeout=self._poll_interval)
                        continue
                    to_block = min(head, self._next_block + self._batch_size - 1)
                    events = self._client.fetch_events(self._next_block, to_block)
                except LedgerUnavailable as exc:
                    self._reconnects += 1
                    logger.warning(
                        "Event subscription interrupted at block %d, reconnecting in %.1fs: %s",
                        self._next_block,
                        self._poll_interval,
                        exc,
                    )
                    self._stop_event.wait(timeout=self._poll_interval)
                    continue

                for event in events:
                    if not self._enqueue(event):
                        return
                self._next_block = to_block + 1

                if to_block >= head:
                    self._stop_event.wait(timeout=self._poll_interval)
        except Exception as exc:
            logger.exception("Event subscription failed")
            self._fail("subscription", exc)

    def _enqueue(self, event: ContractEvent) -> bool:
        while not self._stop_event.is_set():
            try:
                self._queue.put(event, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _idle_wait(self) -> float:
        if not self._deferred:
            return 0.5
        next_due = min(d.due_at for d in self._deferred)
        return min(0.5, max(0.01, next_due - self._clock()))

    def _apply_loop(self) -> None:
        pending: ContractEvent | None = None
        while not self._stop_event.is_set():
            if pending is None:
                try:
                    pending = self._queue.get(timeout=self._idle_wait())
                except queue.Empty:
                    pending = None

            try:
                if pending is not None:
                    self.process(pending)
                    pending = None
                self.retry_deferred()
            except ConsistencyError as exc:
                self._fail("consistency", exc)
                return
            except BetIdOutOfRange as exc:
                self._fail("store", exc)
                return
            except (SQLAlchemyError, StoreError) as exc:
                # The event stays pending; nothing was written.
                logger.warning(
                    "Mirror store write failed, retrying in %.1fs: %s", self._poll_interval, exc
                )
                self._stop_event.wait(timeout=self._poll_interval)
            except Exception as exc:
                logger.exception("Event application failed")
                self._fail("apply", exc)
                return
