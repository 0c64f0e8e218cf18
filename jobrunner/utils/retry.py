"""Retry/backoff for calls to rate-limited external APIs.

Handlers classify failures by raising one of two exception types:

- `TransientError` for the overload class (429 / 503 / 529, timeouts,
  dropped connections). These are retried with backoff.
- `PermanentError` for everything retrying cannot fix (400, 404,
  unsupported content, malformed payloads). These fail on the first attempt.

When the attempt ceiling is reached the caller gets `RetryExhaustedError`,
which the engine records as a failed task outcome rather than a job failure.

Example:
    >>> policy = RetryPolicy(max_attempts=4, base_delay_s=2.0)
    >>> call_with_retry(lambda: client.classify(image), policy=policy)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)
from tenacity.wait import wait_base

from jobrunner.config.load_config import RetryConfig


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TRANSIENT_STATUS_CODES = (429, 503, 529)


class TransientError(RuntimeError):
    """External call failed in a way that may succeed if retried later."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentError(RuntimeError):
    """External call failed in a way retrying cannot fix."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_s: float = 2.0
    max_delay_s: float = 30.0
    backoff: str = "linear"
    transient_status_codes: tuple[int, ...] = DEFAULT_TRANSIENT_STATUS_CODES

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay_s=cfg.base_delay_s,
            max_delay_s=cfg.max_delay_s,
            backoff=cfg.backoff,
            transient_status_codes=cfg.transient_status_codes or DEFAULT_TRANSIENT_STATUS_CODES,
        )

    def is_transient_status(self, status_code: int) -> bool:
        return int(status_code) in self.transient_status_codes

    def wait_strategy(self) -> wait_base:
        if self.backoff == "exponential":
            return wait_exponential(multiplier=self.base_delay_s, max=self.max_delay_s)
        # linear: base, 2*base, 3*base, ...
        return wait_incrementing(start=self.base_delay_s, increment=self.base_delay_s, max=self.max_delay_s)


def error_for_status(status_code: int, message: str, *, policy: RetryPolicy) -> Exception:
    """Map a non-2xx status to the transient/permanent taxonomy."""
    if policy.is_transient_status(status_code):
        return TransientError(message, status_code=status_code)
    return PermanentError(message, status_code=status_code)


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Run `fn`, retrying only `TransientError` up to `policy.max_attempts` times.

    Any other exception propagates from the first attempt unchanged.
    """
    kwargs = {"sleep": sleep} if sleep is not None else {}
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_exception_type(TransientError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=False,
        **kwargs,
    )
    try:
        return retrying(fn)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise RetryExhaustedError(
            f"Gave up after {policy.max_attempts} attempts: {last}",
            attempts=policy.max_attempts,
            last_error=last,
        ) from last
