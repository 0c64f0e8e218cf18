from __future__ import annotations

import json
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Iterable

from pydantic import ValidationError

from jobrunner.config.load_config import AppConfig, EngineConfig, engine_config_for
from jobrunner.runtime.errors import (
    HandlerUnavailableError,
    InvalidJobRequestError,
    JobNotFoundError,
    NoEligibleItemsError,
)
from jobrunner.runtime.registry import JobRegistry
from jobrunner.runtime.types import Continuation, Handler, HandlerContext, JobKind, TaskOutcome
from jobrunner.storage.sqlite_store import TERMINAL_JOB_STATUSES, JobRecord, SQLiteStore
from jobrunner.utils.cancel import CancellationToken, CancelledError
from jobrunner.utils.retry import PermanentError, RetryExhaustedError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one worker-loop invocation."""

    done: bool
    status: str | None = None
    # Nothing claimable, but other invocations still hold in-flight tasks.
    waiting: bool = False
    processed: int = 0
    succeeded: int = 0
    cancelled: int = 0
    counters: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"done": self.done}
        if self.status is not None:
            out["status"] = self.status
        if self.waiting:
            out["waiting"] = True
        if self.processed or self.cancelled or not (self.done or self.waiting):
            out.update(
                {
                    "processed": self.processed,
                    "succeeded": self.succeeded,
                    "cancelled": self.cancelled,
                    "counters": dict(self.counters),
                }
            )
        return out


@dataclass
class _Tally:
    processed: int = 0
    succeeded: int = 0
    cancelled: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    # Set when the job turned terminal mid-batch.
    stopped_status: str | None = None

    def add(self, outcome: TaskOutcome) -> None:
        self.processed += 1
        self.succeeded += 1 if outcome.succeeded else 0
        for name, delta in outcome.counters.items():
            self.counters[name] = self.counters.get(name, 0) + int(delta)


# --- Start


def select_items(
    items: Iterable[dict[str, Any]],
    *,
    filters: dict[str, Any] | None = None,
    limit: int = 0,
) -> list[dict[str, Any]]:
    """Keep items whose fields equal every filter value; `limit > 0` truncates."""
    wanted = dict(filters or {})
    selected = [dict(it) for it in items if all(it.get(k) == v for k, v in wanted.items())]
    if int(limit) > 0:
        selected = selected[: int(limit)]
    return selected


def prepare_payloads(
    kind: JobKind,
    items: Iterable[dict[str, Any]],
    *,
    limit: int = 0,
    filters: dict[str, Any] | None = None,
    max_items: int | None = None,
) -> list[dict[str, Any]]:
    snapshot = select_items(items, filters=filters, limit=limit)
    if not snapshot:
        raise NoEligibleItemsError("No eligible items for this job.")
    if max_items is not None and len(snapshot) > int(max_items):
        raise InvalidJobRequestError(
            f"Too many items: {len(snapshot)} > {int(max_items)}.",
            details={"count": len(snapshot), "max_items": int(max_items)},
        )

    payloads: list[dict[str, Any]] = []
    for i, item in enumerate(snapshot):
        try:
            payloads.append(kind.payload_model.model_validate(item).model_dump(mode="json"))
        except ValidationError as e:
            raise InvalidJobRequestError(
                f"Invalid item at index {i} for kind {kind.name!r}.",
                details={"index": i, "errors": e.errors(include_url=False, include_context=False)},
            ) from e
    return payloads


def job_config_snapshot(
    kind: JobKind,
    settings: EngineConfig,
    *,
    limit: int = 0,
    filters: dict[str, Any] | None = None,
    workers: int = 1,
) -> dict[str, Any]:
    return {
        "kind": kind.name,
        "limit": int(limit),
        "filter": dict(filters or {}),
        "workers": int(workers),
        "engine": asdict(settings),
    }


def create_job_with_tasks(
    store: SQLiteStore,
    *,
    kind: JobKind,
    payloads: list[dict[str, Any]],
    config: dict[str, Any],
) -> JobRecord:
    """Insert the job row and its task snapshot. Call inside `store.transaction()`."""
    job = store.create_job(
        kind=kind.name,
        total=len(payloads),
        config=config,
        counters=kind.counters,
        commit=False,
    )
    store.create_tasks(job_id=job.job_id, payloads=payloads, commit=False)
    return job


def kick(continuation: Continuation, job_id: str, *, workers: int) -> None:
    """Fire `workers` independent invocation chains for one job."""
    for _ in range(max(1, int(workers))):
        continuation.trigger(job_id)


def start_job(
    store: SQLiteStore,
    *,
    kind: JobKind,
    config: AppConfig,
    items: Iterable[dict[str, Any]],
    limit: int = 0,
    filters: dict[str, Any] | None = None,
    workers: int | None = None,
    continuation: Continuation | None = None,
) -> JobRecord:
    settings = engine_config_for(config, kind.name)
    workers = int(workers or settings.parallel_workers)
    payloads = prepare_payloads(
        kind,
        items,
        limit=limit,
        filters=filters,
        max_items=config.limits.max_items_per_job,
    )
    snapshot = job_config_snapshot(kind, settings, limit=limit, filters=filters, workers=workers)

    with store.transaction(mode="IMMEDIATE"):
        job = create_job_with_tasks(store, kind=kind, payloads=payloads, config=snapshot)

    store.append_event(job.job_id, "job_created", {"kind": kind.name, "total": job.total, "workers": workers})
    logger.info("job %s (%s) created with %d task(s)", job.job_id, kind.name, job.total)

    if continuation is not None:
        kick(continuation, job.job_id, workers=workers)
    return job


# --- Worker loop


def _job_snapshot(row: Any) -> dict[str, Any]:
    try:
        snap = json.loads(str(row["config_json"] or "{}"))
    except json.JSONDecodeError:
        return {}
    return snap if isinstance(snap, dict) else {}


def settings_for_job(row: Any, config: AppConfig) -> EngineConfig:
    """Engine settings snapshotted at start win over the current config file."""
    base = engine_config_for(config, str(row["kind"]))
    snap = _job_snapshot(row).get("engine")
    if not isinstance(snap, dict):
        return base
    known = {f.name for f in fields(EngineConfig)}
    return replace(base, **{k: v for k, v in snap.items() if k in known})


def workers_for_job(row: Any, settings: EngineConfig) -> int:
    """Chain fan-out chosen at start; falls back to the kind's `parallel_workers`."""
    try:
        workers = int(_job_snapshot(row).get("workers") or 0)
    except (TypeError, ValueError):
        workers = 0
    return workers if workers > 0 else int(settings.parallel_workers)


def _finish_if_terminal(store: SQLiteStore, job_id: str, settings: EngineConfig) -> BatchResult | None:
    status = store.get_job_status(job_id=job_id)
    if status is None:
        raise JobNotFoundError(job_id)
    if status not in TERMINAL_JOB_STATUSES:
        return None
    if status == "cancelled":
        # Workers that died after a cancel leave in_progress rows behind.
        swept = store.cancel_stale_tasks(job_id=job_id, timeout_s=settings.stuck_task_timeout_s)
        if swept:
            store.append_event(job_id, "tasks_reaped", {"cancelled": swept})
    return BatchResult(done=True, status=status)


def complete_if_finished(store: SQLiteStore, job_id: str) -> BatchResult:
    if store.mark_job_done_if_complete(job_id=job_id):
        item = store.get_job_item(job_id=job_id) or {}
        store.append_event(
            job_id,
            "job_done",
            {
                "total": item.get("total"),
                "processed": item.get("processed"),
                "succeeded": item.get("succeeded"),
                "counters": item.get("counters", {}),
            },
        )
        logger.info(
            "job %s done: %s/%s succeeded",
            job_id,
            item.get("succeeded"),
            item.get("total"),
        )
        return BatchResult(done=True, status="done")

    status = store.get_job_status(job_id=job_id)
    if status in TERMINAL_JOB_STATUSES:
        return BatchResult(done=True, status=status)
    return BatchResult(done=False, status=status, waiting=True)


def _context_for(job_id: str, row: Any, settings: EngineConfig, token: CancellationToken) -> HandlerContext:
    return HandlerContext(
        job_id=job_id,
        task_id=str(row["task_id"]),
        seq=int(row["seq"]),
        attempt=int(row["attempt_count"]),
        timeout_s=float(settings.item_timeout_s),
        cancel=token,
    )


def _execute_task(kind: JobKind, handler: Handler, row: Any, ctx: HandlerContext) -> TaskOutcome:
    try:
        payload = kind.payload_model.model_validate(json.loads(str(row["payload_json"])))
    except ValidationError as e:
        return TaskOutcome.failure(
            f"Invalid payload for kind {kind.name!r}: {e.error_count()} validation error(s)",
            verdict="invalid_payload",
        )

    try:
        outcome = handler(payload, ctx)
    except CancelledError:
        return TaskOutcome.failure("Cancelled before completion", verdict="cancelled")
    except (PermanentError, RetryExhaustedError) as e:
        return TaskOutcome.failure(str(e))
    except Exception as e:
        # One item must never abort the batch.
        ctx.trace(
            "task_failed",
            {"error": f"handler_unhandled_exception: {e}", "traceback": traceback.format_exc()},
        )
        return TaskOutcome.failure(f"Unhandled error: {e}")

    if not isinstance(outcome, TaskOutcome):
        return TaskOutcome.failure(f"Handler returned {type(outcome).__name__}, expected TaskOutcome")
    if any(int(v) < 0 for v in outcome.counters.values()):
        return TaskOutcome.failure(f"Handler returned negative counter increments: {outcome.counters!r}")
    return outcome


def _record(
    store: SQLiteStore,
    job_id: str,
    row: Any,
    outcome: TaskOutcome,
    ctx: HandlerContext,
    tally: _Tally,
) -> None:
    for event_type, payload in list(ctx.events):
        store.append_event(job_id, event_type, payload)

    counted = store.complete_task(
        job_id=job_id,
        task_id=str(row["task_id"]),
        succeeded=outcome.succeeded,
        verdict=outcome.verdict,
        reason=outcome.reason,
        error=outcome.error,
        result=outcome.result,
        counters=outcome.counters,
    )
    if not counted:
        # Reaped and reclaimed elsewhere while we were working; that claim owns it now.
        logger.warning("job %s: task #%s no longer in_progress, outcome dropped", job_id, row["seq"])
        return
    tally.add(outcome)
    if not outcome.succeeded:
        logger.info("job %s: task #%s %s: %s", job_id, row["seq"], outcome.verdict, outcome.error or outcome.reason)


def _cancel_rest(store: SQLiteStore, job_id: str, rows: list[Any], status: str, tally: _Tally) -> None:
    tally.cancelled += store.cancel_claimed_tasks(job_id=job_id, task_ids=[str(r["task_id"]) for r in rows])
    tally.stopped_status = status


def _run_sequential(
    store: SQLiteStore,
    job_id: str,
    rows: list[Any],
    *,
    kind: JobKind,
    handler: Handler,
    settings: EngineConfig,
) -> _Tally:
    tally = _Tally()
    token = CancellationToken()
    for i, row in enumerate(rows):
        # Fresh read before every item: cancel must stop new starts.
        status = store.get_job_status(job_id=job_id)
        if status in TERMINAL_JOB_STATUSES:
            _cancel_rest(store, job_id, rows[i:], str(status), tally)
            break
        # Items queued behind slow ones must not look abandoned to the reaper.
        store.touch_task(job_id=job_id, task_id=str(row["task_id"]))
        ctx = _context_for(job_id, row, settings, token)
        _record(store, job_id, row, _execute_task(kind, handler, row, ctx), ctx, tally)
    return tally


def _run_parallel(
    store: SQLiteStore,
    job_id: str,
    rows: list[Any],
    *,
    kind: JobKind,
    handler: Handler,
    settings: EngineConfig,
) -> _Tally:
    tally = _Tally()
    status = store.get_job_status(job_id=job_id)
    if status in TERMINAL_JOB_STATUSES:
        _cancel_rest(store, job_id, rows, str(status), tally)
        return tally

    # One token per task: only stragglers get cancelled.
    contexts = [_context_for(job_id, row, settings, CancellationToken()) for row in rows]
    pool = ThreadPoolExecutor(max_workers=len(rows), thread_name_prefix="jobrunner-task")
    try:
        futures = [pool.submit(_execute_task, kind, handler, row, ctx) for row, ctx in zip(rows, contexts)]
        _, not_done = wait(futures, timeout=settings.item_timeout_s)
        # Stragglers keep their thread but must not commit side effects after
        # their timeout outcome is written; cancel before recording.
        for fut, ctx in zip(futures, contexts):
            if fut in not_done:
                ctx.cancel.request_cancel()

        # Store writes stay on this thread; the connection is not shared.
        for fut, row, ctx in zip(futures, rows, contexts):
            if fut in not_done:
                outcome = TaskOutcome.failure(
                    f"Timed out after {settings.item_timeout_s:g}s",
                    verdict="timeout",
                )
            else:
                outcome = fut.result()
            _record(store, job_id, row, outcome, ctx, tally)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return tally


def process_batch(
    store: SQLiteStore,
    job_id: str,
    *,
    kind: JobKind,
    handler: Handler,
    settings: EngineConfig,
    continuation: Continuation | None = None,
) -> BatchResult:
    """Run one worker-loop invocation: reap, claim a batch, execute it, hand off.

    Never loops internally. Work beyond this batch is picked up by the
    continuation this call triggers.
    """
    finished = _finish_if_terminal(store, job_id, settings)
    if finished is not None:
        return finished

    reaped = store.reap_stuck_tasks(
        job_id=job_id,
        timeout_s=settings.stuck_task_timeout_s,
        max_attempts=settings.max_task_attempts,
    )
    if reaped.reset or reaped.abandoned:
        store.append_event(job_id, "tasks_reaped", {"reset": reaped.reset, "abandoned": reaped.abandoned})
        logger.warning(
            "job %s: reset %d stuck task(s), abandoned %d after repeated timeouts",
            job_id,
            reaped.reset,
            reaped.abandoned,
        )

    claim = store.claim_tasks(job_id=job_id, batch_size=settings.batch_size)
    if not claim.tasks:
        status = store.get_job_status(job_id=job_id)
        if status in TERMINAL_JOB_STATUSES:
            return BatchResult(done=True, status=status)
        if claim.remaining == 0:
            return complete_if_finished(store, job_id)
        # Other chains hold the rest; the watchdog covers them if they die.
        return BatchResult(done=False, status=status, waiting=True)

    if claim.started:
        store.append_event(job_id, "job_started", {"kind": kind.name, "batch_size": settings.batch_size})

    run = _run_parallel if settings.parallel and len(claim.tasks) > 1 else _run_sequential
    tally = run(store, job_id, list(claim.tasks), kind=kind, handler=handler, settings=settings)

    if tally.stopped_status is not None:
        logger.info("job %s is %s; cancelled %d claimed task(s)", job_id, tally.stopped_status, tally.cancelled)
        return BatchResult(
            done=True,
            status=tally.stopped_status,
            processed=tally.processed,
            succeeded=tally.succeeded,
            cancelled=tally.cancelled,
            counters=tally.counters,
        )

    if continuation is not None:
        continuation.trigger(job_id)
    return BatchResult(
        done=False,
        status="running",
        processed=tally.processed,
        succeeded=tally.succeeded,
        counters=tally.counters,
    )


def fail_job(store: SQLiteStore, job_id: str, error: str) -> bool:
    failed = store.update_job_status(job_id, "failed", error=error)
    if failed:
        store.append_event(job_id, "job_failed", {"error": error})
        logger.error("job %s failed: %s", job_id, error)
    return failed


def invoke_job(
    job_id: str,
    *,
    registry: JobRegistry,
    config: AppConfig,
    db_path: str | None = None,
    continuation: Continuation | None = None,
) -> BatchResult:
    """One self-contained invocation with its own store connection (safe on any thread)."""
    store = SQLiteStore(db_path)
    try:
        row = store.get_job(job_id=job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        kind = registry.get(str(row["kind"]))
        settings = settings_for_job(row, config)

        finished = _finish_if_terminal(store, job_id, settings)
        if finished is not None:
            return finished

        try:
            handler = kind.build_handler(config, store)
        except HandlerUnavailableError as e:
            fail_job(store, job_id, str(e))
            return BatchResult(done=True, status=store.get_job_status(job_id=job_id))

        return process_batch(
            store,
            job_id,
            kind=kind,
            handler=handler,
            settings=settings,
            continuation=continuation,
        )
    finally:
        store.close()


# --- Status / cancel


def job_status(store: SQLiteStore, job_id: str) -> dict[str, Any]:
    item = store.get_job_item(job_id=job_id)
    if item is None:
        raise JobNotFoundError(job_id)
    item["tasks"] = store.count_tasks_by_status(job_id=job_id)
    return item


def task_traces(
    store: SQLiteStore,
    job_id: str,
    *,
    limit: int = 50,
    after_seq: int | None = None,
    statuses: list[str] | None = None,
) -> dict[str, Any]:
    """Per-task outcome records in task order (`seq`), paged by `after_seq`."""
    if store.get_job_status(job_id=job_id) is None:
        raise JobNotFoundError(job_id)
    page = store.list_tasks_page(job_id=job_id, limit=limit, after_seq=after_seq, statuses=statuses)
    return {"job_id": job_id, **page}


def cancel_job(store: SQLiteStore, job_id: str, *, reason: str | None = None) -> dict[str, Any]:
    if store.get_job_status(job_id=job_id) is None:
        raise JobNotFoundError(job_id)
    result = store.cancel_job(job_id=job_id)
    if result.cancelled:
        store.append_event(
            job_id,
            "job_cancelled",
            {"reason": reason or "", "tasks_cancelled": result.tasks_cancelled},
        )
        logger.info("job %s cancelled (%d pending task(s))", job_id, result.tasks_cancelled)
    return {
        "job_id": job_id,
        "cancelled": result.cancelled,
        "status": store.get_job_status(job_id=job_id),
        "tasks_cancelled": result.tasks_cancelled,
    }
