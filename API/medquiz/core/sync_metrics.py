"""In-memory persistence counters: remote saves, failures, conflict recoveries, seals, local flushes."""
from __future__ import annotations

from collections import Counter
from threading import Lock

_lock = Lock()
_counts: Counter[str] = Counter()

SAVE_OK = "save_ok"
SAVE_FAILED = "save_failed"
SAVE_SKIPPED_SEALED = "save_skipped_sealed"
SAVE_SKIPPED_STALE = "save_skipped_stale"
CONFLICT_RECOVERED = "conflict_recovered"
SEAL_OK = "seal_ok"
SEAL_FAILED = "seal_failed"
SEAL_RETRIED = "seal_retried"
LOCAL_FLUSH = "local_flush"


def record(event: str) -> None:
    with _lock:
        _counts[event] += 1


def get_sync_metrics() -> dict:
    with _lock:
        counts = dict(_counts)
    attempts = counts.get(SAVE_OK, 0) + counts.get(SAVE_FAILED, 0)
    failure_rate = (counts.get(SAVE_FAILED, 0) / attempts) if attempts else 0.0
    return {
        "saves_ok": counts.get(SAVE_OK, 0),
        "saves_failed": counts.get(SAVE_FAILED, 0),
        "saves_skipped_sealed": counts.get(SAVE_SKIPPED_SEALED, 0),
        "saves_skipped_stale": counts.get(SAVE_SKIPPED_STALE, 0),
        "conflicts_recovered": counts.get(CONFLICT_RECOVERED, 0),
        "seals_ok": counts.get(SEAL_OK, 0),
        "seals_failed": counts.get(SEAL_FAILED, 0),
        "seals_retried": counts.get(SEAL_RETRIED, 0),
        "local_flushes": counts.get(LOCAL_FLUSH, 0),
        "save_failure_rate": round(failure_rate, 4),
    }


def reset_sync_metrics() -> None:
    """Reset counters (e.g. for tests)."""
    with _lock:
        _counts.clear()
