"""In-memory ledger fake and event builders shared by the tests."""

from __future__ import annotations

import threading

from futures_mirror.exceptions import LedgerRejected, LedgerUnavailable
from futures_mirror.schemas import (
    BetClosed,
    BetJoined,
    BetOpened,
    ContractEvent,
    EventPosition,
    Side,
)

CONTRACT = "0x9d136eEa063eDE5418A6BC7bEafF009bBb6CFa70"
ALICE = "0x00000000000000000000000000000000000000A1"
BOB = "0x00000000000000000000000000000000000000B0"


def opened(bet_id: int, closing_time: int = 1_000, block: int = 1, log_index: int = 0, **kw) -> BetOpened:
    fields = dict(
        bet_id=bet_id,
        initiator=ALICE,
        side=Side.LONG,
        amount=100,
        expiration_time=closing_time - 300,
        closing_time=closing_time,
        position=EventPosition(block_number=block, log_index=log_index),
    )
    fields.update(kw)
    return BetOpened(**fields)


def joined(bet_id: int, counterparty: str = BOB, block: int = 2, log_index: int = 0) -> BetJoined:
    return BetJoined(
        bet_id=bet_id,
        counterparty=counterparty,
        position=EventPosition(block_number=block, log_index=log_index),
    )


def closed(bet_id: int, winner: str = ALICE, block: int = 3, log_index: int = 0) -> BetClosed:
    return BetClosed(
        bet_id=bet_id,
        winner=winner,
        position=EventPosition(block_number=block, log_index=log_index),
    )


class FakeLedger:
    """In-memory stand-in for LedgerClient.

    ``outcomes`` maps bet id to "confirm", "reject" or "transient"; unknown
    ids confirm. A confirmed close appends a BetClosed log for ``winners[id]``
    (default ALICE), like the real contract would.
    """

    contract_address = CONTRACT

    def __init__(self, events: list[ContractEvent] | None = None) -> None:
        self.events: list[ContractEvent] = list(events or [])
        self.outcomes: dict[int, str] = {}
        self.winners: dict[int, str] = {}
        self.close_calls: list[int] = []
        self.fetch_calls: list[tuple[int, int]] = []
        self.fail_fetches = 0
        self.head: int | None = None
        self._lock = threading.RLock()

    def latest_block(self) -> int:
        if self.head is not None:
            return self.head
        with self._lock:
            blocks = [e.position.block_number for e in self.events if e.position]
        return max(blocks, default=0)

    def fetch_events(self, from_block: int, to_block: int) -> list[ContractEvent]:
        self.fetch_calls.append((from_block, to_block))
        if self.fail_fetches:
            self.fail_fetches -= 1
            raise LedgerUnavailable("connection refused")
        with self._lock:
            return sorted(
                (e for e in self.events if from_block <= e.position.block_number <= to_block),
                key=lambda e: e.position.as_tuple(),
            )

    def close_bet(self, bet_id: int, receipt_timeout: float | None = None) -> str:
        self.close_calls.append(bet_id)
        outcome = self.outcomes.get(bet_id, "confirm")
        if outcome == "reject":
            raise LedgerRejected("Bet is not active", bet_id=bet_id)
        if outcome == "transient":
            raise LedgerUnavailable("read timed out", bet_id=bet_id)
        with self._lock:
            block = self.latest_block() + 1
            self.events.append(closed(bet_id, winner=self.winners.get(bet_id, ALICE), block=block))
        return "0x" + f"{bet_id:064x}"
