"""Exception hierarchy for the Futures mirror.

All package errors inherit from FuturesMirrorError. Errors that concern a
single bet carry its ``bet_id`` for log context.
"""

from __future__ import annotations


class FuturesMirrorError(Exception):
    """Base exception for all futures_mirror errors."""

    def __init__(self, message: str, bet_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.bet_id = bet_id

    def __str__(self) -> str:
        if self.bet_id is not None:
            return f"[bet {self.bet_id}] {self.message}"
        return self.message


# --- Store ---


class StoreError(FuturesMirrorError):
    """Raised when a mirror store operation fails."""


class DuplicateKey(StoreError):
    """An Opened event for an id already in the mirror (replay)."""


class UnknownAgreement(StoreError):
    """A Joined/Closed event for an id the mirror has not seen opened yet."""


class StoreUnavailable(StoreError):
    """The store cannot be opened or its schema created. Fatal."""


class BetIdOutOfRange(StoreError):
    """The bet id does not fit the mirror's signed 64-bit id column. Fatal."""


# --- Listener ---


class ConsistencyError(FuturesMirrorError):
    """An ordering gap that did not resolve within the retry window. Fatal."""


# --- Ledger ---


class LedgerError(FuturesMirrorError):
    """Raised when a call to the remote contract fails."""


class LedgerRejected(LedgerError):
    """The contract reverted or refused the action."""


class LedgerUnavailable(LedgerError):
    """Network error or timeout talking to the ledger node. Transient."""
