from __future__ import annotations

import tempfile
import time
from dataclasses import replace

from jobrunner.config.load_config import load_app_config
from jobrunner.runtime import engine, watchdog
from jobrunner.runtime.continuation import QueueContinuation
from jobrunner.runtime.registry import default_registry
from jobrunner.storage.sqlite_store import SQLiteStore


def _start(store: SQLiteStore, n: int, *, workers: int | None = None) -> str:
    job = engine.start_job(
        store,
        kind=default_registry().get("dry_run"),
        config=load_app_config(),
        items=[{"item_id": str(i)} for i in range(n)],
        workers=workers,
    )
    return job.job_id


def test_sweep_kicks_jobs_whose_chain_died() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job_id = _start(store, 4)
            queue = QueueContinuation()

            report = watchdog.sweep(store, config=cfg, continuation=queue)
            assert [r["action"] for r in report] == ["kicked"]
            assert report[0]["pending"] == 4
            # dry_run runs two chains.
            assert queue.pending == [job_id, job_id]
            assert store.get_latest_event(job_id=job_id, event_type="watchdog_kick") is not None

            assert watchdog.sweep(store, config=cfg, continuation=None)[0]["action"] == "stalled"
        finally:
            store.close()


def test_sweep_reaps_stuck_tasks_then_kicks() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job_id = _start(store, 2)
            # A worker claimed everything and crashed.
            store.claim_tasks(job_id=job_id, batch_size=2)

            fresh = watchdog.sweep(store, config=cfg, continuation=None)
            assert fresh[0]["action"] == "healthy"
            assert fresh[0]["in_progress"] == 2

            queue = QueueContinuation()
            later = time.time() + 600
            report = watchdog.sweep(store, config=cfg, continuation=queue, now_ts=later)
            assert report[0]["reset"] == 2
            assert report[0]["action"] == "kicked"
            assert store.count_tasks_by_status(job_id=job_id)["pending"] == 2
        finally:
            store.close()


def test_sweep_completes_jobs_with_nothing_open() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job_id = _start(store, 1)
            row = store.claim_tasks(job_id=job_id, batch_size=1).tasks[0]
            store.complete_task(job_id=job_id, task_id=row["task_id"], succeeded=True)
            assert store.get_job_status(job_id=job_id) == "running"

            report = watchdog.sweep(store, config=cfg, continuation=None)
            assert report[0]["action"] == "completed"
            assert store.get_job_status(job_id=job_id) == "done"

            # Terminal jobs are not swept again.
            assert watchdog.sweep(store, config=cfg, continuation=None) == []
        finally:
            store.close()


def test_sweep_uses_job_snapshot_not_edited_config() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job_id = _start(store, 2, workers=3)
            store.claim_tasks(job_id=job_id, batch_size=2)

            # Config edited after start: much longer stuck window, wider fan-out.
            edited = replace(
                cfg,
                kinds={**cfg.kinds, "dry_run": {**cfg.kinds["dry_run"], "stuck_task_timeout_s": 10000, "parallel_workers": 7}},
            )
            queue = QueueContinuation()
            report = watchdog.sweep(store, config=edited, continuation=queue, now_ts=time.time() + 200)

            assert report[0]["reset"] == 2
            assert report[0]["action"] == "kicked"
            assert queue.pending == [job_id] * 3
        finally:
            store.close()


def test_sweep_clears_orphaned_claims_of_cancelled_jobs() -> None:
    cfg = load_app_config()
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            job_id = _start(store, 2)
            # The worker holding this claim dies; then the job is cancelled.
            store.claim_tasks(job_id=job_id, batch_size=1)
            assert engine.cancel_job(store, job_id)["tasks_cancelled"] == 1

            within_window = watchdog.sweep(store, config=cfg, continuation=None, now_ts=time.time() + 10)
            assert [(r["job_id"], r["action"], r["in_progress"]) for r in within_window] == [(job_id, "cancelling", 1)]

            report = watchdog.sweep(store, config=cfg, continuation=None, now_ts=time.time() + 10000)
            assert report[0]["action"] == "swept"
            assert report[0]["cancelled"] == 1
            counts = store.count_tasks_by_status(job_id=job_id)
            assert (counts["in_progress"], counts["cancelled"]) == (0, 2)
            assert store.get_job_status(job_id=job_id) == "cancelled"

            # Nothing left to look at.
            assert watchdog.sweep(store, config=cfg, continuation=None) == []
        finally:
            store.close()
