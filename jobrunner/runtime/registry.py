from __future__ import annotations

from jobrunner.runtime.dry_run_simulation import DryRunPayload, build_dry_run_handler
from jobrunner.runtime.errors import UnknownJobKindError
from jobrunner.runtime.hero_audit import HeroAuditPayload, build_hero_audit_handler
from jobrunner.runtime.types import JobKind


class JobRegistry:
    """Job kinds known to one process. Built per app/CLI invocation, never global."""

    def __init__(self, kinds: list[JobKind] | None = None) -> None:
        self._kinds: dict[str, JobKind] = {}
        for kind in kinds or []:
            self.register(kind)

    def register(self, kind: JobKind) -> JobKind:
        name = kind.name.strip()
        if not name:
            raise ValueError("Job kind name must be non-empty.")
        if name in self._kinds:
            raise ValueError(f"Job kind already registered: {name!r}")
        self._kinds[name] = kind
        return kind

    def get(self, name: str) -> JobKind:
        kind = self._kinds.get(str(name))
        if kind is None:
            raise UnknownJobKindError(str(name), known=self.names())
        return kind

    def names(self) -> list[str]:
        return sorted(self._kinds)

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "name": k.name,
                "description": k.description,
                "counters": list(k.counters),
                "payload_schema": k.payload_model.model_json_schema(),
            }
            for k in (self._kinds[n] for n in self.names())
        ]


def default_registry() -> JobRegistry:
    return JobRegistry(
        [
            JobKind(
                name="dry_run",
                payload_model=DryRunPayload,
                build_handler=build_dry_run_handler,
                counters=("retried",),
                description="Synthetic items with deterministic outcomes (no network).",
            ),
            JobKind(
                name="hero_audit",
                payload_model=HeroAuditPayload,
                build_handler=build_hero_audit_handler,
                counters=("cleared", "flagged"),
                description="Fetch each listing's hero image and classify it with a vision model.",
            ),
        ]
    )
