"""Futures Mirror: event mirror and settlement bot for the Futures bet contract."""

__version__ = "0.1.0"

from futures_mirror.config import MirrorSettings, settings
from futures_mirror.exceptions import (
    ConsistencyError,
    BetIdOutOfRange,
    DuplicateKey,
    FuturesMirrorError,
    LedgerRejected,
    LedgerUnavailable,
    StoreUnavailable,
    UnknownAgreement,
)
from futures_mirror.ledger_client import LedgerClient
from futures_mirror.listener import ApplyResult, EventListener
from futures_mirror.scanner import SettlementScanner
from futures_mirror.schemas import (
    Agreement,
    BetClosed,
    BetJoined,
    BetOpened,
    EventPosition,
    SettlementAttempt,
    SettlementOutcome,
    Side,
)
from futures_mirror.service import MirrorService
from futures_mirror.store import EventStore
from futures_mirror.submitter import SettlementSubmitter

__all__ = [
    "settings",
    "MirrorSettings",
    # Mirror
    "EventStore",
    "EventListener",
    "ApplyResult",
    "Agreement",
    "BetOpened",
    "BetJoined",
    "BetClosed",
    "EventPosition",
    "Side",
    # Settlement
    "LedgerClient",
    "SettlementScanner",
    "SettlementSubmitter",
    "SettlementAttempt",
    "SettlementOutcome",
    "MirrorService",
    # Errors
    "FuturesMirrorError",
    "DuplicateKey",
    "UnknownAgreement",
    "StoreUnavailable",
    "BetIdOutOfRange",
    "ConsistencyError",
    "LedgerRejected",
    "LedgerUnavailable",
]
