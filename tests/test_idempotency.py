from __future__ import annotations

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from jobrunner.api.app import create_app
from jobrunner.runtime.continuation import QueueContinuation


def _client(monkeypatch: pytest.MonkeyPatch, td: str) -> TestClient:
    monkeypatch.setenv("JOBRUNNER_SQLITE_PATH", os.path.join(td, "jobs.db"))
    monkeypatch.setenv("JOBRUNNER_WATCHDOG_ON_STARTUP", "0")
    app = create_app()
    app.state.continuation = QueueContinuation()
    app.state.continuation_mode = "queue"
    return TestClient(app)


def test_idempotency_same_key_same_body_returns_same_job_id(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(monkeypatch, td) as client:
            body = {"kind": "dry_run", "items": [{"item_id": "1"}, {"item_id": "2"}], "workers": 1}
            r1 = client.post("/api/v1/jobs", json=body, headers={"Idempotency-Key": "k1"})
            r2 = client.post("/api/v1/jobs", json=body, headers={"Idempotency-Key": "k1"})
            assert r1.status_code == r2.status_code == 200
            assert r1.json()["job_id"] == r2.json()["job_id"]

            # The replay neither creates a job nor starts another chain.
            assert len(client.get("/api/v1/jobs").json()["items"]) == 1
            assert client.app.state.continuation.pending == [r1.json()["job_id"]]


def test_idempotency_same_key_different_body_conflict(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(monkeypatch, td) as client:
            b1 = {"kind": "dry_run", "items": [{"item_id": "1"}]}
            b2 = {"kind": "dry_run", "items": [{"item_id": "2"}]}

            assert client.post("/api/v1/jobs", json=b1, headers={"Idempotency-Key": "k1"}).status_code == 200
            resp = client.post("/api/v1/jobs", json=b2, headers={"Idempotency-Key": "k1"})
            assert resp.status_code == 409
            assert resp.json()["error"]["code"] == "conflict"


def test_without_key_every_request_creates_a_job(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        with _client(monkeypatch, td) as client:
            body = {"kind": "dry_run", "items": [{"item_id": "1"}]}
            a = client.post("/api/v1/jobs", json=body).json()["job_id"]
            b = client.post("/api/v1/jobs", json=body).json()["job_id"]
            assert a != b
