from __future__ import annotations

from fastapi import APIRouter

from medquiz.core.sync_metrics import get_sync_metrics

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/sync")
async def sync_metrics():
    """Progress persistence counters plus alerts when remote saves keep failing."""
    out = get_sync_metrics()
    alerts: list[str] = []
    attempts = out.get("saves_ok", 0) + out.get("saves_failed", 0)
    if attempts >= 10 and out.get("save_failure_rate", 0.0) > 0.2:
        alerts.append("high_save_failure_rate")
    if out.get("seals_failed", 0) > 0:
        alerts.append("seal_failures")
    out["alerts"] = alerts
    return out
