"""Configuration for the Futures event mirror and settlement bot.

All settings are driven by environment variables with sensible defaults
for a local Hardhat node. The bot transacts from a node-managed account,
so no private key is ever read here.
"""

from __future__ import annotations

import os


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


class MirrorSettings:
    # --- Ledger connection ---
    rpc_url: str = os.getenv("FUTURES_MIRROR_RPC_URL", "http://127.0.0.1:8545/")
    contract_address: str = os.getenv(
        "FUTURES_MIRROR_CONTRACT_ADDRESS", "0x9d136eEa063eDE5418A6BC7bEafF009bBb6CFa70"
    )
    # Node-managed account used as the closeBet sender. Empty = node's first account.
    bot_account: str = os.getenv("FUTURES_MIRROR_BOT_ACCOUNT", "")
    rpc_timeout_seconds: float = _get_float("FUTURES_MIRROR_RPC_TIMEOUT", 10.0)
    # Hardhat artifact (artifacts/contracts/Futures.sol/Futures.json). Empty = built-in ABI.
    abi_path: str = os.getenv("FUTURES_MIRROR_ABI_PATH", "")

    # --- Mirror store ---
    database_url: str = os.getenv("FUTURES_MIRROR_DATABASE_URL", "sqlite:///./events.db")

    # --- Event listener ---
    # First block to read when no cursor has been persisted yet.
    start_block: int = _get_int("FUTURES_MIRROR_START_BLOCK", 0)
    block_batch_size: int = _get_int("FUTURES_MIRROR_BLOCK_BATCH_SIZE", 500)
    poll_interval_seconds: float = _get_float("FUTURES_MIRROR_POLL_INTERVAL", 2.0)
    queue_size: int = _get_int("FUTURES_MIRROR_QUEUE_SIZE", 1000)
    # Ordering-gap retry (Joined/Closed seen before Opened).
    gap_retry_attempts: int = _get_int("FUTURES_MIRROR_GAP_RETRY_ATTEMPTS", 5)
    gap_retry_initial_seconds: float = _get_float("FUTURES_MIRROR_GAP_RETRY_INITIAL", 0.5)
    gap_retry_max_delay_seconds: float = _get_float("FUTURES_MIRROR_GAP_RETRY_MAX_DELAY", 10.0)

    # --- Settlement scanner ---
    scan_interval_seconds: float = _get_float("FUTURES_MIRROR_SCAN_INTERVAL", 15.0)
    # 0 = no cap.
    max_per_scan: int = _get_int("FUTURES_MIRROR_MAX_PER_SCAN", 0)
    # Skip ids with a confirmed closeBet while their BetClosed event is in flight.
    confirm_grace_seconds: float = _get_float("FUTURES_MIRROR_CONFIRM_GRACE", 60.0)
    # Skip ids whose closeBet the contract rejected for this long.
    reject_backoff_seconds: float = _get_float("FUTURES_MIRROR_REJECT_BACKOFF", 300.0)
    receipt_timeout_seconds: float = _get_float("FUTURES_MIRROR_RECEIPT_TIMEOUT", 120.0)

    # --- Escalation ---
    # Webhook URL to POST consistency/fatal notices to (e.g., Slack incoming webhook).
    escalation_webhook_url: str = os.getenv("FUTURES_MIRROR_ESCALATION_WEBHOOK_URL", "")

    # --- Status API ---
    status_host: str = os.getenv("FUTURES_MIRROR_HOST", "127.0.0.1")
    status_port: int = _get_int("FUTURES_MIRROR_PORT", 3200)

    log_level: str = os.getenv("FUTURES_MIRROR_LOG_LEVEL", "INFO")
    run_scanner: bool = _get_bool("FUTURES_MIRROR_RUN_SCANNER", True)


settings = MirrorSettings()
