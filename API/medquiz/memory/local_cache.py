"""File-backed local fallback cache for in-flight progress writes.

Entries are keyed by persisted record id and hold the three snapshots the
session mirrors before every remote write: elapsed seconds, the answers map and
the (running_score, questions_answered, current_unit_index) triple. Writes are
synchronous so they complete even when the process is being torn down; the
entry is only removed once the remote record is sealed or the attempt is
discarded.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from medquiz.core.logging import DOMAIN_PERSISTENCE, get_domain_logger
from medquiz.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_PERSISTENCE)


@dataclass(frozen=True)
class LocalSnapshot:
    record_id: str
    elapsed_seconds: int
    answers: dict[str, list[str]]
    running_score: float
    questions_answered: int
    current_unit_index: int
    saved_at: datetime


class LocalFallbackCache:
    def __init__(self, base_dir: Path | str | None = None):
        self.base = Path(base_dir or settings.local_cache_dir)

    def _path(self, record_id: str) -> Path:
        safe = "".join(ch for ch in record_id if ch.isalnum() or ch in "-_")
        return self.base / f"quiz_{safe}.json"

    def write(
        self,
        record_id: str,
        *,
        elapsed_seconds: int,
        answers: dict[str, list[str]],
        running_score: float,
        questions_answered: int,
        current_unit_index: int,
    ) -> None:
        self.base.mkdir(parents=True, exist_ok=True)
        payload = {
            "elapsed_seconds": int(elapsed_seconds),
            "answers": answers,
            "progress": {
                "running_score": running_score,
                "questions_answered": questions_answered,
                "current_unit_index": current_unit_index,
            },
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        target = self._path(record_id)
        tmp = target.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        os.replace(tmp, target)

    def read(self, record_id: str) -> LocalSnapshot | None:
        target = self._path(record_id)
        if not target.exists():
            return None
        try:
            raw = json.loads(target.read_text(encoding="utf-8"))
            progress = raw.get("progress") or {}
            answers = {
                str(qid): [str(opt) for opt in options]
                for qid, options in (raw.get("answers") or {}).items()
                if isinstance(options, list)
            }
            saved_at = datetime.fromisoformat(raw["saved_at"])
            if saved_at.tzinfo is None:
                saved_at = saved_at.replace(tzinfo=timezone.utc)
            return LocalSnapshot(
                record_id=record_id,
                elapsed_seconds=max(0, int(raw.get("elapsed_seconds", 0))),
                answers=answers,
                running_score=float(progress.get("running_score", 0.0)),
                questions_answered=int(progress.get("questions_answered", 0)),
                current_unit_index=int(progress.get("current_unit_index", 0)),
                saved_at=saved_at,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable local cache entry %s: %s", target.name, exc)
            return None

    def clear(self, record_id: str) -> None:
        self._path(record_id).unlink(missing_ok=True)
