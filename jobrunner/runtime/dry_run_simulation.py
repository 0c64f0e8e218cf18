from __future__ import annotations

import time

from pydantic import BaseModel, Field

from jobrunner.config.load_config import AppConfig
from jobrunner.runtime.types import Handler, HandlerContext, TaskOutcome
from jobrunner.storage.sqlite_store import SQLiteStore
from jobrunner.utils.retry import (
    PermanentError,
    RetryExhaustedError,
    RetryPolicy,
    TransientError,
    call_with_retry,
)


class DryRunPayload(BaseModel):
    """Synthetic work item. Outcomes are a pure function of the payload."""

    item_id: str = Field(min_length=1)
    group: str = ""
    fail: bool = False
    # Number of simulated overload responses before the call succeeds.
    transient_failures: int = Field(default=0, ge=0, le=20)
    sleep_s: float = Field(default=0.0, ge=0.0, le=5.0)
    verdict: str = "ok"


def build_dry_run_handler(cfg: AppConfig, store: SQLiteStore | None = None) -> Handler:
    """No network, no credentials: exercises claim/retry/trace plumbing end to end."""
    # Same attempt ceiling as real handlers, but never sleep between attempts.
    policy = RetryPolicy(
        max_attempts=cfg.retry.max_attempts,
        base_delay_s=0.0,
        max_delay_s=0.0,
        backoff=cfg.retry.backoff,
        transient_status_codes=cfg.retry.transient_status_codes,
    )

    def handle(payload: DryRunPayload, ctx: HandlerContext) -> TaskOutcome:
        attempts = 0

        def call() -> str:
            nonlocal attempts
            attempts += 1
            if attempts <= payload.transient_failures:
                raise TransientError("simulated overload", status_code=529)
            if payload.fail:
                raise PermanentError("simulated permanent failure", status_code=400)
            return payload.verdict

        if payload.sleep_s:
            time.sleep(payload.sleep_s)
        ctx.check_cancelled()

        try:
            verdict = call_with_retry(call, policy=policy)
        except (PermanentError, RetryExhaustedError) as e:
            return TaskOutcome(
                succeeded=False,
                verdict="failed",
                reason=f"{payload.item_id}: {e}",
                error=str(e),
                result={"attempts": attempts},
                counters={"retried": attempts - 1} if attempts > 1 else {},
            )

        return TaskOutcome(
            succeeded=True,
            verdict=verdict,
            reason=f"{payload.item_id}: simulated",
            result={"attempts": attempts, "group": payload.group},
            counters={"retried": attempts - 1} if attempts > 1 else {},
        )

    return handle
