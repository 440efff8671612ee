"""Settlement submitter: one closeBet attempt per call.

The submitter never touches the mirror. A confirmed closeBet produces a
BetClosed event, and the listener is the only writer of ``winner``. Every
failure mode is reported as a SettlementAttempt instead of raised, so one
bad bet never stops a scan.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from futures_mirror.config import settings
from futures_mirror.exceptions import LedgerRejected, LedgerUnavailable
from futures_mirror.ledger_client import LedgerClient
from futures_mirror.schemas import SettlementAttempt, SettlementOutcome

logger = logging.getLogger(__name__)


class SettlementSubmitter:
    def __init__(self, client: LedgerClient, receipt_timeout: float | None = None) -> None:
        self._client = client
        self._receipt_timeout = (
            receipt_timeout if receipt_timeout is not None else settings.receipt_timeout_seconds
        )

    def submit(self, agreement_id: int) -> SettlementAttempt:
        """Send closeBet for *agreement_id*, wait for the receipt and classify it.

        - CONFIRMED: mined with status 1. The mirror updates when BetClosed arrives.
        - REJECTED: the contract reverted. Expected for bets already closed
          or never joined; the next scan skips it once the mirror catches up.
        - TRANSIENT: network error or timeout. The bet stays settleable and
          the next scan retries.
        """
        started_at = datetime.now(timezone.utc)

        try:
            tx_hash = self._client.close_bet(agreement_id, receipt_timeout=self._receipt_timeout)
        except LedgerRejected as exc:
            logger.info("closeBet(%d) rejected by contract: %s", agreement_id, exc.message)
            return SettlementAttempt(
                agreement_id=agreement_id,
                outcome=SettlementOutcome.REJECTED,
                reason=exc.message,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )
        except LedgerUnavailable as exc:
            logger.warning("closeBet(%d) failed, will retry next scan: %s", agreement_id, exc)
            return SettlementAttempt(
                agreement_id=agreement_id,
                outcome=SettlementOutcome.TRANSIENT,
                reason=str(exc),
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
            )

        logger.info("Bet %d closed (tx %s)", agreement_id, tx_hash)
        return SettlementAttempt(
            agreement_id=agreement_id,
            outcome=SettlementOutcome.CONFIRMED,
            tx_hash=tx_hash,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )
