from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request

from jobrunner.api.dependencies import get_app_config, get_continuation
from jobrunner.runtime import watchdog
from jobrunner.storage.sqlite_store import SQLiteStore


router = APIRouter()


@router.post("/watchdog/sweep")
def sweep(request: Request) -> dict[str, Any]:
    """Reap, re-kick or finish every non-terminal job. Safe to call from a cron."""
    store = SQLiteStore()
    try:
        report = watchdog.sweep(
            store,
            config=get_app_config(request),
            continuation=get_continuation(request),
        )
    finally:
        store.close()
    return {"checked_at": time.time(), "jobs_checked": len(report), "items": report}
