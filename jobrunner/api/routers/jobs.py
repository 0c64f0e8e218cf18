from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from pydantic import BaseModel, Field

from jobrunner.api.dependencies import get_app_config, get_continuation, get_registry
from jobrunner.api.errors import APIError
from jobrunner.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from jobrunner.config.load_config import engine_config_for
from jobrunner.runtime import engine
from jobrunner.runtime.errors import (
    HandlerUnavailableError,
    InvalidJobRequestError,
    JobNotFoundError,
    NoEligibleItemsError,
    UnknownJobKindError,
)
from jobrunner.storage.sqlite_store import JOB_STATUSES, TASK_STATUSES, SQLiteStore, default_db_path


logger = logging.getLogger(__name__)

router = APIRouter()


class StartJobRequest(BaseModel):
    kind: str = Field(min_length=1, description="Registered job kind, e.g. 'hero_audit'.")
    items: list[dict[str, Any]] = Field(default_factory=list, description="Work items (one task each).")
    limit: int = Field(default=0, ge=0, description="Keep at most this many items (0 = all).")
    filter: dict[str, Any] = Field(default_factory=dict, description="Keep items whose fields equal these values.")
    workers: int | None = Field(default=None, ge=1, le=50, description="Initial parallel chains.")


class CancelJobRequest(BaseModel):
    reason: str = ""


def _not_found(job_id: str) -> APIError:
    return APIError(status_code=404, code="not_found", message="Job not found.", details={"job_id": job_id})


def _check_statuses(values: list[str] | None, allowed: tuple[str, ...]) -> list[str] | None:
    if not values:
        return None
    bad = [v for v in values if v not in allowed]
    if bad:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=f"Unknown status filter: {bad}.",
            details={"allowed": list(allowed)},
        )
    return values


@router.post("/jobs")
def start_job(
    body: StartJobRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    cfg = get_app_config(request)
    registry = get_registry(request)
    try:
        kind = registry.get(body.kind)
    except UnknownJobKindError as e:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message=str(e),
            details={"known_kinds": e.known},
        ) from e

    try:
        payloads = engine.prepare_payloads(
            kind,
            body.items,
            limit=body.limit,
            filters=body.filter,
            max_items=cfg.limits.max_items_per_job,
        )
    except NoEligibleItemsError as e:
        raise APIError(status_code=404, code="not_found", message=str(e)) from e
    except InvalidJobRequestError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e), details=e.details) from e

    settings = engine_config_for(cfg, kind.name)
    workers = int(body.workers or settings.parallel_workers)
    config_snapshot = engine.job_config_snapshot(
        kind,
        settings,
        limit=body.limit,
        filters=body.filter,
        workers=workers,
    )

    # Idempotency: hash the raw request body.
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

    store = SQLiteStore()
    try:
        # Fail fast for missing credentials before any rows are written.
        try:
            kind.build_handler(cfg, store)
        except HandlerUnavailableError as e:
            raise APIError(
                status_code=503,
                code="dependency_unavailable",
                message=str(e),
                details={"missing": e.missing},
            ) from e

        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != request_hash:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            job = engine.create_job_with_tasks(store, kind=kind, payloads=payloads, config=config_snapshot)
            response: dict[str, Any] = {
                "job_id": job.job_id,
                "total": job.total,
                "job": {
                    "job_id": job.job_id,
                    "kind": job.kind,
                    "status": job.status,
                    "total": job.total,
                    "processed": 0,
                    "succeeded": 0,
                    "counters": {name: 0 for name in kind.counters},
                    "created_at": job.created_at,
                    "started_at": None,
                    "finished_at": None,
                    "config_snapshot": config_snapshot,
                    "error": None,
                },
            }
            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=request_hash,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                    commit=False,
                )

        store.append_event(job.job_id, "job_created", {"kind": kind.name, "total": job.total, "workers": workers})
        logger.info("job %s (%s) created with %d task(s)", job.job_id, kind.name, job.total)
    finally:
        store.close()

    continuation = get_continuation(request)
    if continuation is not None:
        engine.kick(continuation, job.job_id, workers=workers)
    return response


@router.get("/jobs")
def list_jobs(
    request: Request,
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
    kind: str | None = Query(default=None),
) -> dict[str, Any]:
    cfg = get_app_config(request)
    page_size = min(int(limit or cfg.limits.list_default_limit), cfg.limits.list_max_limit)
    statuses = _check_statuses(status, JOB_STATUSES)

    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor)
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    store = SQLiteStore()
    try:
        page = store.list_jobs_page(
            limit=page_size,
            cursor=cursor_obj.as_key() if cursor_obj is not None else None,
            statuses=statuses,
            kind=kind or None,
        )
    finally:
        store.close()

    next_cursor = Cursor.after(page.get("next_cursor"))
    page["next_cursor"] = encode_cursor(next_cursor) if next_cursor is not None else None
    return page


@router.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        return {"job": engine.job_status(store, job_id)}
    except JobNotFoundError as e:
        raise _not_found(job_id) from e
    finally:
        store.close()


@router.post("/jobs/{job_id}/process")
def process_job(job_id: str, request: Request) -> dict[str, Any]:
    """Run one worker-loop invocation for this job (the continuation target)."""
    try:
        result = engine.invoke_job(
            job_id,
            registry=get_registry(request),
            config=get_app_config(request),
            db_path=default_db_path(),
            continuation=get_continuation(request),
        )
    except JobNotFoundError as e:
        raise _not_found(job_id) from e
    except UnknownJobKindError as e:
        raise APIError(
            status_code=409,
            code="conflict",
            message=f"Job {job_id} has a kind this server does not know: {e.kind!r}.",
            details={"known_kinds": e.known},
        ) from e
    return {"job_id": job_id, **result.to_dict()}


@router.get("/jobs/{job_id}/tasks")
def list_job_tasks(
    job_id: str,
    request: Request,
    after: int | None = Query(default=None, ge=0, description="Return tasks with seq > after."),
    limit: int | None = Query(default=None, ge=1),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    cfg = get_app_config(request)
    page_size = min(int(limit or cfg.limits.list_default_limit), cfg.limits.list_max_limit)
    statuses = _check_statuses(status, TASK_STATUSES)
    store = SQLiteStore()
    try:
        return engine.task_traces(store, job_id, limit=page_size, after_seq=after, statuses=statuses)
    except JobNotFoundError as e:
        raise _not_found(job_id) from e
    finally:
        store.close()


@router.get("/jobs/{job_id}/events")
def list_job_events(
    job_id: str,
    limit: int = Query(default=200, ge=1, le=2000),
    event_type: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_job_status(job_id=job_id) is None:
            raise _not_found(job_id)
        return {
            "job_id": job_id,
            "items": store.list_events(job_id=job_id, limit=int(limit), event_types=event_type or None),
        }
    finally:
        store.close()


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, body: CancelJobRequest | None = None) -> dict[str, Any]:
    reason = (body.reason if body is not None else "").strip()
    store = SQLiteStore()
    try:
        return engine.cancel_job(store, job_id, reason=reason or None)
    except JobNotFoundError as e:
        raise _not_found(job_id) from e
    finally:
        store.close()


@router.get("/kinds")
def list_kinds(request: Request) -> dict[str, Any]:
    return {"items": get_registry(request).describe()}
