from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Protocol

from pydantic import BaseModel

from jobrunner.config.load_config import AppConfig
from jobrunner.utils.cancel import CancellationToken

if TYPE_CHECKING:
    from jobrunner.storage.sqlite_store import SQLiteStore


@dataclass(frozen=True)
class TaskOutcome:
    """What a handler reports for one item. The engine only interprets `succeeded`."""

    succeeded: bool
    verdict: str | None = None
    reason: str | None = None
    error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    # Domain counter increments (e.g. {"cleared": 1}); non-negative.
    counters: dict[str, int] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, *, verdict: str | None = "failed", reason: str | None = None) -> TaskOutcome:
        return cls(succeeded=False, verdict=verdict, reason=reason or error, error=error)


@dataclass
class HandlerContext:
    job_id: str
    task_id: str
    seq: int
    attempt: int
    timeout_s: float
    cancel: CancellationToken = field(default_factory=CancellationToken)
    # Trace events are buffered and written by the engine's own thread;
    # handlers may run on pool threads that must not touch the store.
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, {"task_id": self.task_id, "seq": self.seq, **payload}))

    def check_cancelled(self) -> None:
        self.cancel.raise_if_cancelled()


Handler = Callable[[BaseModel, HandlerContext], TaskOutcome]


@dataclass(frozen=True)
class JobKind:
    """A registered kind of job: its payload schema and how to build its handler.

    `build_handler` runs once per invocation on the invoking thread; it may
    read secrets from the store and should raise `HandlerUnavailableError`
    when a dependency (API key, client library) is missing.
    """

    name: str
    payload_model: type[BaseModel]
    build_handler: Callable[[AppConfig, "SQLiteStore | None"], Handler]
    counters: tuple[str, ...] = ()
    description: str = ""


class Continuation(Protocol):
    def trigger(self, job_id: str) -> None:
        """Schedule one more worker-loop invocation for `job_id` without waiting for it."""
        ...
