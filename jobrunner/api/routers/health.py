from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from jobrunner.storage.sqlite_store import SCHEMA_VERSION
from jobrunner.storage.sqlite_store import SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "jobrunner",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "httpx": _pkg_version("httpx"),
            "openai": _pkg_version("openai"),
            "tenacity": _pkg_version("tenacity"),
        },
        "ts": time.time(),
    }


@router.get("/system/queue")
def system_queue(request: Request) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {
            "ts": time.time(),
            "continuation": getattr(request.app.state, "continuation_mode", None),
            "jobs_by_status": store.count_jobs_by_status(),
            "startup": {
                "watchdog_jobs_checked": getattr(request.app.state, "watchdog_jobs_checked", 0),
            },
        }
    finally:
        store.close()
