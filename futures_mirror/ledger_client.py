"""web3 client for the deployed Futures contract.

Two jobs only: read the contract's BetOpened / BetJoined / BetClosed logs
in block ranges, and send ``closeBet(betId)`` from a node-managed account,
waiting for the receipt. Everything the contract does beyond that is a black
box here.

Errors are translated at this boundary: contract reverts become
LedgerRejected, network and RPC failures become LedgerUnavailable.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from futures_mirror.config import settings
from futures_mirror.exceptions import LedgerRejected, LedgerUnavailable
from futures_mirror.schemas import (
    BetClosed,
    BetJoined,
    BetOpened,
    ContractEvent,
    EventKind,
    EventPosition,
    Side,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Minimal ABI: the three mirrored events and the settlement action.
FUTURES_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "name": "BetOpened",
        "type": "event",
        "inputs": [
            {"indexed": False, "name": "betId", "type": "uint256"},
            {"indexed": False, "name": "userA", "type": "address"},
            {"indexed": False, "name": "side", "type": "uint8"},
            {"indexed": False, "name": "betAmount", "type": "uint256"},
            {"indexed": False, "name": "expirationTime", "type": "uint256"},
            {"indexed": False, "name": "closingTime", "type": "uint256"},
        ],
    },
    {
        "anonymous": False,
        "name": "BetJoined",
        "type": "event",
        "inputs": [
            {"indexed": False, "name": "betId", "type": "uint256"},
            {"indexed": False, "name": "userB", "type": "address"},
        ],
    },
    {
        "anonymous": False,
        "name": "BetClosed",
        "type": "event",
        "inputs": [
            {"indexed": False, "name": "betId", "type": "uint256"},
            {"indexed": False, "name": "winner", "type": "address"},
        ],
    },
    {
        "name": "closeBet",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"internalType": "uint256", "name": "betId", "type": "uint256"}],
        "outputs": [],
    },
]

_MIRRORED_EVENTS = tuple(kind.value for kind in EventKind)


def load_abi(path: str | Path | None) -> list[dict[str, Any]]:
    """Load the contract ABI from a Hardhat artifact (or bare ABI list).

    Falls back to the built-in minimal ABI when no path is given.
    """
    if not path:
        return FUTURES_ABI
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data["abi"]
    return data


def event_from_log(
    name: str,
    args: dict[str, Any],
    block_number: int,
    log_index: int,
) -> ContractEvent:
    """Convert a decoded contract log into the mirror's event model."""
    position = EventPosition(block_number=block_number, log_index=log_index)
    if name == EventKind.OPENED.value:
        return BetOpened(
            bet_id=int(args["betId"]),
            initiator=args["userA"],
            side=Side.from_contract(int(args["side"])),
            amount=int(args["betAmount"]),
            expiration_time=int(args["expirationTime"]),
            closing_time=int(args["closingTime"]),
            position=position,
        )
    if name == EventKind.JOINED.value:
        return BetJoined(bet_id=int(args["betId"]), counterparty=args["userB"], position=position)
    if name == EventKind.CLOSED.value:
        return BetClosed(bet_id=int(args["betId"]), winner=args["winner"], position=position)
    raise ValueError(f"Not a mirrored event: {name!r}")


def _revert_reason(exc: ContractLogicError) -> str:
    return getattr(exc, "message", None) or str(exc) or "execution reverted"


class LedgerClient:
    """Thin wrapper over a web3 HTTP provider and the Futures contract."""

    def __init__(
        self,
        rpc_url: str | None = None,
        contract_address: str | None = None,
        abi: list[dict[str, Any]] | None = None,
        bot_account: str | None = None,
        timeout_seconds: float | None = None,
        w3: Web3 | None = None,
    ) -> None:
        self.rpc_url = rpc_url if rpc_url is not None else settings.rpc_url
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.rpc_timeout_seconds
        )
        self._w3 = w3 or Web3(
            Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout_seconds})
        )
        self.contract_address = Web3.to_checksum_address(
            contract_address if contract_address is not None else settings.contract_address
        )
        self._contract = self._w3.eth.contract(
            address=self.contract_address,
            abi=abi if abi is not None else load_abi(settings.abi_path),
        )
        self._bot_account = bot_account if bot_account is not None else settings.bot_account
        self._topics = {
            bytes(Web3.keccak(text=signature)): name
            for name, signature in self._event_signatures().items()
        }

    def _event_signatures(self) -> dict[str, str]:
        signatures = {}
        for item in self._contract.abi:
            name = item.get("name")
            if item.get("type") == "event" and name in _MIRRORED_EVENTS:
                types = ",".join(i["type"] for i in item["inputs"])
                signatures[name] = f"{name}({types})"
        missing = set(_MIRRORED_EVENTS) - set(signatures)
        if missing:
            raise ValueError(f"Contract ABI lacks events: {sorted(missing)}")
        return signatures

    def _call(self, what: str, fn: Callable[[], T]) -> T:
        """Run one RPC round-trip, mapping transport failures to LedgerUnavailable."""
        try:
            return fn()
        except requests.exceptions.RequestException as exc:
            raise LedgerUnavailable(f"{what}: RPC transport error at {self.rpc_url}: {exc}") from exc
        except TimeExhausted as exc:
            raise LedgerUnavailable(f"{what}: timed out: {exc}") from exc
        except ContractLogicError:
            raise
        except Web3Exception as exc:
            raise LedgerUnavailable(f"{what}: RPC error: {exc}") from exc

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    def latest_block(self) -> int:
        return self._call("eth_blockNumber", lambda: self._w3.eth.block_number)

    def fetch_events(self, from_block: int, to_block: int) -> list[ContractEvent]:
        """Return mirrored events in ``[from_block, to_block]`` in ledger order."""
        logs = self._call(
            "eth_getLogs",
            lambda: self._w3.eth.get_logs(
                {
                    "address": self.contract_address,
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }
            ),
        )
        events: list[ContractEvent] = []
        for log in sorted(logs, key=lambda entry: (entry["blockNumber"], entry["logIndex"])):
            topics = log.get("topics") or []
            name = self._topics.get(bytes(topics[0])) if topics else None
            if name is None:
                continue
            decoded = getattr(self._contract.events, name)().process_log(log)
            events.append(
                event_from_log(name, dict(decoded["args"]), log["blockNumber"], log["logIndex"])
            )
        return events

    # ------------------------------------------------------------------
    # Settlement action
    # ------------------------------------------------------------------

    def _sender(self) -> str:
        if not self._bot_account:
            accounts = self._call("eth_accounts", lambda: self._w3.eth.accounts)
            if not accounts:
                raise LedgerUnavailable("Node exposes no accounts to send closeBet from")
            self._bot_account = accounts[0]
        return self._bot_account

    def close_bet(self, bet_id: int, receipt_timeout: float | None = None) -> str:
        """Send ``closeBet(bet_id)`` and wait for it to be mined.

        Returns the transaction hash on success.

        Raises:
            LedgerRejected: The contract reverted (already closed, not joined, ...).
            LedgerUnavailable: Network error, RPC error or receipt wait timed out.
        """
        timeout = (
            receipt_timeout if receipt_timeout is not None else settings.receipt_timeout_seconds
        )
        sender = self._sender()

        try:
            tx_hash = self._call(
                "closeBet",
                lambda: self._contract.functions.closeBet(bet_id).transact({"from": sender}),
            )
        except ContractLogicError as exc:
            raise LedgerRejected(_revert_reason(exc), bet_id=bet_id) from exc

        t0 = time.monotonic()
        receipt = self._call(
            "eth_getTransactionReceipt",
            lambda: self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
        )
        logger.debug(
            "closeBet(%d) mined in block %s after %dms",
            bet_id,
            receipt["blockNumber"],
            int((time.monotonic() - t0) * 1000),
        )

        if receipt["status"] != 1:
            raise LedgerRejected(
                f"closeBet reverted in block {receipt['blockNumber']}", bet_id=bet_id
            )
        return Web3.to_hex(tx_hash)

    def health_check(self) -> bool:
        """Quick check that the RPC node is reachable."""
        try:
            return self._w3.is_connected()
        except (requests.exceptions.RequestException, Web3Exception):
            return False
