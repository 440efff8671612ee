"""Pydantic models for mirrored agreements, contract events, and settlement attempts."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_contract(cls, value: int) -> Side:
        """Map the contract's uint8 enum (0 = LONG, 1 = SHORT)."""
        try:
            return (cls.LONG, cls.SHORT)[value]
        except IndexError:
            raise ValueError(f"Unknown side value from contract: {value!r}") from None


class EventKind(str, Enum):
    OPENED = "BetOpened"
    JOINED = "BetJoined"
    CLOSED = "BetClosed"


class SettlementOutcome(str, Enum):
    """How a single closeBet attempt ended."""

    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TRANSIENT = "transient"


# ---------------------------------------------------------------------------
# Contract events (decoded from the remote log stream)
# ---------------------------------------------------------------------------


class EventPosition(BaseModel):
    """Location of a log in the ledger: (block number, log index within block)."""

    model_config = ConfigDict(frozen=True)

    block_number: int = Field(..., ge=0)
    log_index: int = Field(default=0, ge=0)

    def as_tuple(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def __lt__(self, other: EventPosition) -> bool:
        return self.as_tuple() < other.as_tuple()

    def __le__(self, other: EventPosition) -> bool:
        return self.as_tuple() <= other.as_tuple()


class BetOpened(BaseModel):
    kind: EventKind = EventKind.OPENED
    bet_id: int = Field(..., ge=0)
    initiator: str
    side: Side
    amount: int = Field(..., ge=0)
    expiration_time: int
    closing_time: int
    position: EventPosition | None = None


class BetJoined(BaseModel):
    kind: EventKind = EventKind.JOINED
    bet_id: int = Field(..., ge=0)
    counterparty: str
    position: EventPosition | None = None


class BetClosed(BaseModel):
    kind: EventKind = EventKind.CLOSED
    bet_id: int = Field(..., ge=0)
    winner: str
    position: EventPosition | None = None


ContractEvent = BetOpened | BetJoined | BetClosed


# ---------------------------------------------------------------------------
# Mirror record
# ---------------------------------------------------------------------------


class Agreement(BaseModel):
    """One mirrored bet, as stored in the ``agreements`` table."""

    id: int
    is_active: bool = False
    side: Side
    amount: int
    initiator: str
    counterparty: str | None = None
    expiration_time: int
    closing_time: int
    winner: str | None = None
    created_at: datetime | None = None

    @property
    def settled(self) -> bool:
        return self.winner is not None


# ---------------------------------------------------------------------------
# Settlement attempt (Submitter output)
# ---------------------------------------------------------------------------


class SettlementAttempt(BaseModel):
    """Outcome of one closeBet submission. Never written to the mirror."""

    agreement_id: int
    outcome: SettlementOutcome
    tx_hash: str | None = None
    reason: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
