"""Durable mirror of Futures contract state.

One ``agreements`` row per on-chain bet id plus a ``listener_cursor`` row
per contract recording the last confirmed log position. All
writes come from the event listener; the scanner only reads.

Each operation is one transaction. A process-local lock serialises them so
that no two writers touch the same row concurrently, which also lets the
same store handle be shared by the listener and scanner threads.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from futures_mirror.config import settings
from futures_mirror.exceptions import (
    BetIdOutOfRange,
    DuplicateKey,
    StoreError,
    StoreUnavailable,
    UnknownAgreement,
)
from futures_mirror.schemas import (
    Agreement,
    BetClosed,
    BetJoined,
    BetOpened,
    EventPosition,
    Side,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

agreements = Table(
    "agreements",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=False),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("side", String(8), nullable=False),
    # uint256 does not fit a SQL integer column
    Column("amount", String(80), nullable=False),
    Column("initiator", String(64), nullable=False),
    Column("counterparty", String(64), nullable=True),
    Column("expiration_time", BigInteger, nullable=False),
    Column("closing_time", BigInteger, nullable=False, index=True),
    Column("winner", String(64), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

listener_cursor = Table(
    "listener_cursor",
    metadata,
    Column("contract_address", String(64), primary_key=True),
    Column("block_number", BigInteger, nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}

# Largest id the BigInteger key column can hold.
MAX_BET_ID = 2**63 - 1


def _row_to_agreement(row) -> Agreement:
    return Agreement(
        id=row.id,
        is_active=bool(row.is_active),
        side=Side(row.side),
        amount=int(row.amount),
        initiator=row.initiator,
        counterparty=row.counterparty,
        expiration_time=row.expiration_time,
        closing_time=row.closing_time,
        winner=row.winner,
        created_at=row.created_at,
    )


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def _check_bet_id(bet_id: int) -> None:
    if not 0 <= bet_id <= MAX_BET_ID:
        raise BetIdOutOfRange(f"Bet id outside 0..{MAX_BET_ID}", bet_id=bet_id)


class EventStore:
    """Explicitly owned handle on the mirror database.

    Lifecycle is ``open() -> use -> close()``; the store can also be used as
    a context manager.
    """

    def __init__(
        self,
        database_url: str | None = None,
        contract_address: str | None = None,
    ) -> None:
        self._url = database_url if database_url is not None else settings.database_url
        self._cursor_key = (
            contract_address if contract_address is not None else settings.contract_address
        ).lower()
        self._engine: Engine | None = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> EventStore:
        """Connect and create the schema if absent. Safe to call on every start.

        Raises StoreUnavailable if the database cannot be reached.
        """
        if self._engine is not None:
            return self

        kwargs: dict = {}
        if self._url in _MEMORY_URLS:
            # One shared connection, otherwise every thread gets its own empty database
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}

        try:
            engine = create_engine(self._url, **kwargs)
            metadata.create_all(engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot open mirror store at {self._url}: {exc}") from exc

        self._engine = engine
        logger.info("Mirror store opened at %s", self._url)
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("Mirror store closed")

    def __enter__(self) -> EventStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreError("Mirror store is not open")
        return self._engine

    # ------------------------------------------------------------------
    # Event application (listener only)
    # ------------------------------------------------------------------

    def upsert_opened(self, event: BetOpened) -> None:
        """Insert a new agreement.

        Raises DuplicateKey if the id is already mirrored. Callers treat that
        as a replayed event, not a failure.
        """
        _check_bet_id(event.bet_id)
        engine = self._require_engine()
        row = {
            "id": event.bet_id,
            "is_active": False,
            "side": event.side.value,
            "amount": str(event.amount),
            "initiator": event.initiator,
            "counterparty": None,
            "expiration_time": event.expiration_time,
            "closing_time": event.closing_time,
            "winner": None,
            "created_at": datetime.now(timezone.utc),
        }
        with self._lock:
            try:
                with engine.begin() as conn:
                    conn.execute(insert(agreements).values(**row))
            except IntegrityError as exc:
                raise DuplicateKey("Agreement already mirrored", bet_id=event.bet_id) from exc

    def apply_joined(self, event: BetJoined) -> bool:
        """Record the counterparty and activate the agreement in one statement.

        Returns False when the same join was already applied. A join arriving
        after the close still records the counterparty but leaves the
        agreement inactive.

        Raises UnknownAgreement if the id has not been opened yet.
        """
        _check_bet_id(event.bet_id)
        engine = self._require_engine()
        with self._lock, engine.begin() as conn:
            current = conn.execute(
                select(agreements.c.counterparty, agreements.c.winner).where(
                    agreements.c.id == event.bet_id
                )
            ).first()
            if current is None:
                raise UnknownAgreement("Joined before Opened", bet_id=event.bet_id)

            if current.counterparty is not None:
                if not _same_address(current.counterparty, event.counterparty):
                    logger.warning(
                        "Bet %d already joined by %s, ignoring join by %s",
                        event.bet_id,
                        current.counterparty,
                        event.counterparty,
                    )
                return False

            conn.execute(
                update(agreements)
                .where(agreements.c.id == event.bet_id, agreements.c.counterparty.is_(None))
                .values(counterparty=event.counterparty, is_active=current.winner is None)
            )
        return True

    def apply_closed(self, event: BetClosed) -> bool:
        """Set the winner and deactivate the agreement, at most once.

        Returns False when the agreement already has a winner (the stored
        winner is kept). Raises UnknownAgreement if the id is absent.
        """
        _check_bet_id(event.bet_id)
        engine = self._require_engine()
        with self._lock, engine.begin() as conn:
            result = conn.execute(
                update(agreements)
                .where(agreements.c.id == event.bet_id, agreements.c.winner.is_(None))
                .values(winner=event.winner, is_active=False)
            )
            if result.rowcount == 1:
                return True

            existing = conn.execute(
                select(agreements.c.winner).where(agreements.c.id == event.bet_id)
            ).first()
            if existing is None:
                raise UnknownAgreement("Closed before Opened", bet_id=event.bet_id)
            if not _same_address(existing.winner, event.winner):
                logger.warning(
                    "Bet %d already settled to %s, ignoring close to %s",
                    event.bet_id,
                    existing.winner,
                    event.winner,
                )
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_settleable(self, now: int | float) -> list[Agreement]:
        """Unsettled agreements whose closing time has passed, oldest deadline first."""
        engine = self._require_engine()
        stmt = (
            select(agreements)
            .where(agreements.c.winner.is_(None), agreements.c.closing_time <= int(now))
            .order_by(agreements.c.closing_time.asc(), agreements.c.id.asc())
        )
        with self._lock, engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [_row_to_agreement(r) for r in rows]

    def get(self, bet_id: int) -> Agreement | None:
        if not 0 <= bet_id <= MAX_BET_ID:
            return None
        engine = self._require_engine()
        with self._lock, engine.connect() as conn:
            row = conn.execute(select(agreements).where(agreements.c.id == bet_id)).first()
        return _row_to_agreement(row) if row is not None else None

    def count(self) -> int:
        engine = self._require_engine()
        with self._lock, engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(agreements)).scalar_one()

    # ------------------------------------------------------------------
    # Listener cursor
    # ------------------------------------------------------------------

    def load_cursor(self) -> EventPosition | None:
        """Return the last confirmed log position, or None on first run."""
        engine = self._require_engine()
        with self._lock, engine.connect() as conn:
            row = conn.execute(
                select(listener_cursor).where(
                    listener_cursor.c.contract_address == self._cursor_key
                )
            ).first()
        if row is None:
            return None
        return EventPosition(block_number=row.block_number, log_index=row.log_index)

    def save_cursor(self, position: EventPosition) -> None:
        engine = self._require_engine()
        values = {
            "block_number": position.block_number,
            "log_index": position.log_index,
            "updated_at": datetime.now(timezone.utc),
        }
        with self._lock, engine.begin() as conn:
            result = conn.execute(
                update(listener_cursor)
                .where(listener_cursor.c.contract_address == self._cursor_key)
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(
                    insert(listener_cursor).values(contract_address=self._cursor_key, **values)
                )
