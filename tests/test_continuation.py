from __future__ import annotations

import tempfile
import threading
import time

import httpx

from jobrunner.config.load_config import load_app_config
from jobrunner.runtime import engine
from jobrunner.runtime.continuation import HttpContinuation, QueueContinuation, ThreadContinuation
from jobrunner.runtime.registry import default_registry
from jobrunner.storage.sqlite_store import SQLiteStore


def _start_dry_run(db_path: str, n: int) -> str:
    store = SQLiteStore(db_path)
    try:
        job = engine.start_job(
            store,
            kind=default_registry().get("dry_run"),
            config=load_app_config(),
            items=[{"item_id": str(i)} for i in range(n)],
        )
        return job.job_id
    finally:
        store.close()


def test_queue_continuation_drains_job_to_completion() -> None:
    cfg = load_app_config()
    registry = default_registry()

    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/jobs.db"
        job_id = _start_dry_run(db_path, 7)

        queue = QueueContinuation()
        engine.kick(queue, job_id, workers=2)
        assert queue.pending == [job_id, job_id]

        n = queue.drain(
            lambda jid: engine.invoke_job(jid, registry=registry, config=cfg, db_path=db_path, continuation=queue)
        )
        assert n >= 3
        assert queue.pending == []

        store = SQLiteStore(db_path)
        try:
            status = engine.job_status(store, job_id)
            assert status["status"] == "done"
            assert status["processed"] == 7
            assert status["tasks"]["done"] == 7
        finally:
            store.close()


def test_queue_drain_respects_max_invocations() -> None:
    queue = QueueContinuation()
    seen: list[str] = []

    def run(job_id: str) -> None:
        seen.append(job_id)
        queue.trigger(job_id)

    queue.trigger("job_a")
    assert queue.drain(run, max_invocations=3) == 3
    assert seen == ["job_a"] * 3
    assert queue.pending == ["job_a"]


def test_thread_continuation_runs_chain_in_background() -> None:
    cfg = load_app_config()

    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/jobs.db"
        job_id = _start_dry_run(db_path, 5)

        ThreadContinuation(registry=default_registry(), config=cfg, db_path=db_path).trigger(job_id)

        store = SQLiteStore(db_path)
        try:
            deadline = time.time() + 20
            while time.time() < deadline:
                if store.get_job_status(job_id=job_id) == "done":
                    break
                time.sleep(0.05)
            item = store.get_job_item(job_id=job_id)
            assert item["status"] == "done"
            assert item["processed"] == 5
        finally:
            store.close()


def test_http_continuation_posts_to_process_endpoint() -> None:
    seen: list[httpx.Request] = []
    posted = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        posted.set()
        return httpx.Response(200, json={"done": False})

    cont = HttpContinuation(
        base_url="http://jobrunner.internal/",
        headers={"Authorization": "Bearer t0ken"},
        transport=httpx.MockTransport(handler),
    )
    cont.trigger("job_abc")

    assert posted.wait(timeout=10)
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/api/v1/jobs/job_abc/process"
    assert seen[0].headers["authorization"] == "Bearer t0ken"
