from __future__ import annotations

from typing import Any


class JobError(RuntimeError):
    pass


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UnknownJobKindError(JobError):
    def __init__(self, kind: str, *, known: list[str]) -> None:
        super().__init__(f"Unknown job kind: {kind!r}")
        self.kind = kind
        self.known = known


class InvalidJobRequestError(JobError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class NoEligibleItemsError(JobError):
    pass


class HandlerUnavailableError(JobError):
    """A job kind's handler cannot be built (missing API key or client library)."""

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []
