"""Process-level wiring: one store handle, one ledger client, two units.

The service owns every long-lived resource and passes them explicitly to the
listener and scanner. Lifecycle is ``open -> start -> wait -> stop -> close``.
A fatal error in either unit stops the whole service so the process can exit
non-zero and be restarted by its supervisor.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from futures_mirror.config import settings
from futures_mirror.exceptions import FuturesMirrorError, StoreUnavailable
from futures_mirror.ledger_client import LedgerClient
from futures_mirror.listener import EventListener
from futures_mirror.notifier import notify_escalation
from futures_mirror.scanner import SettlementScanner
from futures_mirror.store import EventStore
from futures_mirror.submitter import SettlementSubmitter

logger = logging.getLogger(__name__)


class MirrorService:
    def __init__(
        self,
        store: EventStore | None = None,
        client: LedgerClient | None = None,
        run_scanner: bool | None = None,
        on_fatal: Callable[[], None] | None = None,
    ) -> None:
        self.store = store if store is not None else EventStore()
        self.client = client
        self.run_scanner = run_scanner if run_scanner is not None else settings.run_scanner
        self.on_fatal = on_fatal
        self.listener: EventListener | None = None
        self.scanner: SettlementScanner | None = None
        self._stop_requested = threading.Event()
        self._failures: list[tuple[str, BaseException]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the store (creating the schema) and build both units.

        Raises StoreUnavailable if the mirror cannot be opened.
        """
        self.store.open()
        if self.client is None:
            self.client = LedgerClient()
        self.listener = EventListener(self.store, self.client, on_failure=self.record_failure)
        self.scanner = SettlementScanner(self.store, SettlementSubmitter(self.client))

    def start(self) -> None:
        if self.listener is None or self.scanner is None:
            self.open()
        self._stop_requested.clear()
        self.listener.start()
        if self.run_scanner:
            self.scanner.start()
        else:
            logger.info("Settlement scanner disabled; running as mirror only")

    def stop(self, timeout: float = 5.0) -> None:
        if self.scanner is not None:
            self.scanner.stop(timeout=timeout)
        if self.listener is not None:
            self.listener.stop(timeout=timeout)

    def close(self) -> None:
        self.store.close()

    def request_stop(self) -> None:
        """Ask :meth:`run` to shut down (signal handlers call this)."""
        self._stop_requested.set()

    @property
    def failed(self) -> bool:
        return bool(self._failures)

    @property
    def exit_code(self) -> int:
        return 1 if self._failures else 0

    def record_failure(self, unit: str, exc: BaseException) -> None:
        """Mark *unit* as failed and stop the service."""
        self._failures.append((unit, exc))
        self._stop_requested.set()
        if self.on_fatal is not None:
            self.on_fatal()

    def run(self) -> int:
        """Run until stopped or until a unit fails. Returns the process exit code."""
        try:
            self.start()
        except StoreUnavailable as exc:
            logger.error("Cannot start: %s", exc)
            notify_escalation("store", exc)
            self.record_failure("store", exc)
            return self.exit_code

        try:
            self._stop_requested.wait()
        finally:
            self.stop()
            self.close()

        for unit, exc in self._failures:
            logger.error("Exiting after fatal %s error: %s", unit, exc)
        return self.exit_code

    def scan_once(self) -> int:
        """Open the mirror, run a single settlement scan, close. Returns exit code."""
        try:
            self.open()
        except StoreUnavailable as exc:
            logger.error("Cannot start: %s", exc)
            return 1
        try:
            attempts = self.scanner.scan_once()
        except (FuturesMirrorError, SQLAlchemyError) as exc:
            logger.error("Settlement scan failed: %s", exc)
            return 1
        finally:
            self.close()
        logger.info("Scan submitted %d settlement(s)", len(attempts))
        return 0

    def status(self) -> dict:
        return {
            "failed": self.failed,
            "failures": [f"{unit}: {exc}" for unit, exc in self._failures],
            "listener": self.listener.status() if self.listener else {"running": False},
            "scanner": self.scanner.status() if self.scanner else {"running": False},
        }
