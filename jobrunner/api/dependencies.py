from __future__ import annotations

import os
import threading

from fastapi import Request

from jobrunner.api.errors import APIError
from jobrunner.config.load_config import AppConfig, ConfigError, load_app_config
from jobrunner.runtime.continuation import HttpContinuation, ThreadContinuation
from jobrunner.runtime.registry import JobRegistry, default_registry
from jobrunner.runtime.types import Continuation


_INIT_LOCK = threading.Lock()

# "queue" is not offered here: nothing in a server process would drain it.
# Tests and the CLI construct a QueueContinuation directly.
CONTINUATION_MODES = ("thread", "http", "none")


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def continuation_mode() -> str:
    mode = os.getenv("JOBRUNNER_CONTINUATION", "thread").strip().lower() or "thread"
    if mode not in CONTINUATION_MODES:
        raise ConfigError(f"Invalid JOBRUNNER_CONTINUATION={mode!r}; expected one of {list(CONTINUATION_MODES)}")
    return mode


def build_continuation(mode: str, *, registry: JobRegistry, config: AppConfig) -> Continuation | None:
    if mode == "thread":
        return ThreadContinuation(registry=registry, config=config)
    if mode == "http":
        base_url = os.getenv("JOBRUNNER_SELF_URL", "http://127.0.0.1:8000")
        token = os.getenv("JOBRUNNER_SELF_TOKEN", "").strip()
        headers = {"Authorization": f"Bearer {token}"} if token else None
        return HttpContinuation(base_url=base_url, headers=headers)
    return None


def init_runtime(state: object) -> None:
    """Populate `app.state` with config, job kinds and the continuation (idempotent)."""
    with _INIT_LOCK:
        if getattr(state, "app_config", None) is None:
            setattr(state, "app_config", load_app_config())
        if getattr(state, "registry", None) is None:
            setattr(state, "registry", default_registry())
        if not hasattr(state, "continuation"):
            mode = continuation_mode()
            setattr(state, "continuation_mode", mode)
            setattr(
                state,
                "continuation",
                build_continuation(mode, registry=getattr(state, "registry"), config=getattr(state, "app_config")),
            )


def _ensure_runtime(request: Request) -> None:
    try:
        init_runtime(request.app.state)
    except ConfigError as e:
        raise APIError(status_code=500, code="internal", message=f"Invalid configuration: {e}") from e


def get_app_config(request: Request) -> AppConfig:
    _ensure_runtime(request)
    return request.app.state.app_config


def get_registry(request: Request) -> JobRegistry:
    _ensure_runtime(request)
    return request.app.state.registry


def get_continuation(request: Request) -> Continuation | None:
    _ensure_runtime(request)
    return request.app.state.continuation
