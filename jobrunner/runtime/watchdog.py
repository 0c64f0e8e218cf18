from __future__ import annotations

import logging
import time
from typing import Any

from jobrunner.config.load_config import AppConfig
from jobrunner.runtime.engine import complete_if_finished, kick, settings_for_job, workers_for_job
from jobrunner.runtime.types import Continuation
from jobrunner.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


def _entry(job_id: str, row: Any, action: str, counts: dict[str, int], **extra: int) -> dict[str, Any]:
    return {
        "job_id": job_id,
        "kind": str(row["kind"]),
        "action": action,
        "pending": counts.get("pending", 0),
        "in_progress": counts.get("in_progress", 0),
        "reset": extra.get("reset", 0),
        "abandoned": extra.get("abandoned", 0),
        "cancelled": extra.get("cancelled", 0),
    }


def _sweep_cancelled(store: SQLiteStore, *, config: AppConfig, now: float) -> list[dict[str, Any]]:
    """Cancelled jobs get no further invocations, so their orphaned claims end here."""
    report: list[dict[str, Any]] = []
    for job_id in store.list_job_ids(statuses=["cancelled"], with_in_progress=True):
        row = store.get_job(job_id=job_id)
        if row is None:
            continue
        settings = settings_for_job(row, config)
        swept = store.cancel_stale_tasks(job_id=job_id, timeout_s=settings.stuck_task_timeout_s, now_ts=now)
        if swept:
            store.append_event(job_id, "tasks_reaped", {"cancelled": swept, "source": "watchdog"})
            logger.info("watchdog: cancelled job %s, swept %d orphaned task(s)", job_id, swept)
        counts = store.count_tasks_by_status(job_id=job_id)
        report.append(_entry(job_id, row, "swept" if swept else "cancelling", counts, cancelled=swept))
    return report


def sweep(
    store: SQLiteStore,
    *,
    config: AppConfig,
    continuation: Continuation | None,
    now_ts: float | None = None,
) -> list[dict[str, Any]]:
    """Recover every job whose invocation chain may have died.

    Per non-terminal job: reap stuck tasks (abandoning those over the attempt
    ceiling), re-kick jobs with pending work but nothing in flight, and finish
    jobs with nothing left. Cancelled jobs still holding claims have their
    stale tasks swept to cancelled. Timeouts and fan-out come from each job's
    start-time snapshot. Meant to run periodically from outside the chains.
    """
    now = time.time() if now_ts is None else float(now_ts)
    report: list[dict[str, Any]] = []

    for job_id in store.list_job_ids(statuses=["pending", "running"]):
        row = store.get_job(job_id=job_id)
        if row is None:
            continue
        settings = settings_for_job(row, config)
        workers = workers_for_job(row, settings)

        reaped = store.reap_stuck_tasks(
            job_id=job_id,
            timeout_s=settings.stuck_task_timeout_s,
            max_attempts=settings.max_task_attempts,
            now_ts=now,
        )
        if reaped.reset or reaped.abandoned:
            store.append_event(
                job_id,
                "tasks_reaped",
                {"reset": reaped.reset, "abandoned": reaped.abandoned, "source": "watchdog"},
            )

        counts = store.count_tasks_by_status(job_id=job_id)
        pending = counts.get("pending", 0)
        in_progress = counts.get("in_progress", 0)

        if pending > 0 and in_progress == 0:
            action = "kicked"
            store.append_event(job_id, "watchdog_kick", {"pending": pending, "workers": workers})
            if continuation is not None:
                kick(continuation, job_id, workers=workers)
            else:
                action = "stalled"
        elif pending == 0 and in_progress == 0:
            result = complete_if_finished(store, job_id)
            action = "completed" if result.status == "done" else "unchanged"
        elif reaped.reset or reaped.abandoned:
            action = "reaped"
        else:
            action = "healthy"

        if action != "healthy":
            logger.info(
                "watchdog: job %s %s (pending=%d in_progress=%d reset=%d abandoned=%d)",
                job_id,
                action,
                pending,
                in_progress,
                reaped.reset,
                reaped.abandoned,
            )
        report.append(_entry(job_id, row, action, counts, reset=reaped.reset, abandoned=reaped.abandoned))

    report.extend(_sweep_cancelled(store, config=config, now=now))
    return report
