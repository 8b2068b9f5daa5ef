# stayledger/application/settings.py

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SyncSettings:
    """Timers and limits for the event sync worker."""

    cursor_name: str = "booking-ledger"
    poll_interval_seconds: float = 5.0
    cleanup_interval_seconds: float = 3600.0
    reconcile_interval_seconds: float = 1800.0
    keeper_interval_seconds: float = 60.0
    keeper_enabled: bool = False
    max_committed_entries: int = 10_000
    prune_safety_seconds: int = 3600
    prune_batch_limit: int = 1000
    recovery_window_blocks: int = 0
    ledger_timeout_seconds: float = 10.0
    ledger_max_workers: int = 8

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            cursor_name=os.getenv("SYNC_CURSOR_NAME", "booking-ledger"),
            poll_interval_seconds=_env_float("SYNC_POLL_INTERVAL_SECONDS", 5.0),
            cleanup_interval_seconds=_env_float("SYNC_CLEANUP_INTERVAL_SECONDS", 3600.0),
            reconcile_interval_seconds=_env_float("SYNC_RECONCILE_INTERVAL_SECONDS", 1800.0),
            keeper_interval_seconds=_env_float("SYNC_KEEPER_INTERVAL_SECONDS", 60.0),
            keeper_enabled=_env_bool("SYNC_KEEPER_ENABLED", False),
            max_committed_entries=_env_int("SYNC_MAX_COMMITTED_ENTRIES", 10_000),
            prune_safety_seconds=_env_int("SYNC_PRUNE_SAFETY_SECONDS", 3600),
            prune_batch_limit=_env_int("SYNC_PRUNE_BATCH_LIMIT", 1000),
            recovery_window_blocks=_env_int("SYNC_RECOVERY_WINDOW_BLOCKS", 0),
            ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", 10.0),
            ledger_max_workers=_env_int("LEDGER_MAX_WORKERS", 8),
        )
