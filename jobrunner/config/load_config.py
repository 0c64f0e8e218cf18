from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str, min_v: int | None = None) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_float(value: Any, *, key: str, min_v: float | None = None) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e
    if min_v is not None and out < min_v:
        raise ConfigError(f"Invalid {key}: must be >= {min_v}, got {out}")
    return out


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_choice(value: Any, *, key: str, choices: tuple[str, ...]) -> str:
    s = _as_str(value, key=key).strip().lower()
    if s not in choices:
        raise ConfigError(f"Invalid {key}: must be one of {list(choices)}, got {s!r}")
    return s


@dataclass(frozen=True)
class EngineConfig:
    batch_size: int
    parallel: bool
    parallel_workers: int
    stuck_task_timeout_s: float
    max_task_attempts: int
    item_timeout_s: float


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    base_delay_s: float
    max_delay_s: float
    backoff: str
    transient_status_codes: tuple[int, ...]


@dataclass(frozen=True)
class VisionConfig:
    model: str
    api_base: str
    api_key_secret: str
    max_tokens: int
    timeout_s: float


@dataclass(frozen=True)
class ImageFetchConfig:
    timeout_s: float
    min_bytes: int
    allowed_media_types: tuple[str, ...]


@dataclass(frozen=True)
class LimitsConfig:
    max_items_per_job: int
    list_default_limit: int
    list_max_limit: int


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig
    retry: RetryConfig
    vision: VisionConfig
    images: ImageFetchConfig
    limits: LimitsConfig
    # kind name -> raw engine overrides ([kinds.<name>] tables)
    kinds: dict[str, dict[str, Any]]


_ENGINE_KEYS = (
    "batch_size",
    "parallel",
    "parallel_workers",
    "stuck_task_timeout_s",
    "max_task_attempts",
    "item_timeout_s",
)


def _parse_engine(raw: dict[str, Any], *, prefix: str, base: EngineConfig | None = None) -> EngineConfig:
    unknown = sorted(set(raw) - set(_ENGINE_KEYS))
    if unknown:
        raise ConfigError(f"Unknown keys in [{prefix}]: {unknown}")

    def pick(name: str) -> Any:
        if name in raw:
            return raw[name]
        if base is not None:
            return getattr(base, name)
        return None

    return EngineConfig(
        batch_size=_as_int(pick("batch_size"), key=f"{prefix}.batch_size", min_v=1),
        parallel=_as_bool(pick("parallel"), key=f"{prefix}.parallel"),
        parallel_workers=_as_int(pick("parallel_workers"), key=f"{prefix}.parallel_workers", min_v=1),
        stuck_task_timeout_s=_as_float(pick("stuck_task_timeout_s"), key=f"{prefix}.stuck_task_timeout_s", min_v=1.0),
        max_task_attempts=_as_int(pick("max_task_attempts"), key=f"{prefix}.max_task_attempts", min_v=0),
        item_timeout_s=_as_float(pick("item_timeout_s"), key=f"{prefix}.item_timeout_s", min_v=0.1),
    )


def engine_config_for(cfg: AppConfig, kind: str) -> EngineConfig:
    """Engine settings for one job kind: [engine] defaults + [kinds.<kind>] overrides."""
    overrides = cfg.kinds.get(kind)
    if not overrides:
        return cfg.engine
    return _parse_engine(overrides, prefix=f"kinds.{kind}", base=cfg.engine)


def default_config_path() -> Path:
    return Path(os.getenv("JOBRUNNER_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    import tomllib

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    engine = raw.get("engine", {})
    retry = raw.get("retry", {})
    vision = raw.get("vision", {})
    images = raw.get("images", {})
    limits = raw.get("limits", {})
    kinds = raw.get("kinds", {})
    if not isinstance(kinds, dict) or not all(isinstance(v, dict) for v in kinds.values()):
        raise ConfigError("Invalid [kinds]: expected one table per job kind")

    app_cfg = AppConfig(
        engine=_parse_engine(engine, prefix="engine"),
        retry=RetryConfig(
            max_attempts=_as_int(retry.get("max_attempts"), key="retry.max_attempts", min_v=1),
            base_delay_s=_as_float(retry.get("base_delay_s"), key="retry.base_delay_s", min_v=0.0),
            max_delay_s=_as_float(retry.get("max_delay_s"), key="retry.max_delay_s", min_v=0.0),
            backoff=_as_choice(retry.get("backoff"), key="retry.backoff", choices=("linear", "exponential")),
            transient_status_codes=tuple(
                _as_int(c, key="retry.transient_status_codes") for c in (retry.get("transient_status_codes") or [])
            ),
        ),
        vision=VisionConfig(
            model=_as_str(vision.get("model"), key="vision.model"),
            api_base=_as_str(vision.get("api_base"), key="vision.api_base"),
            api_key_secret=_as_str(vision.get("api_key_secret"), key="vision.api_key_secret"),
            max_tokens=_as_int(vision.get("max_tokens"), key="vision.max_tokens", min_v=1),
            timeout_s=_as_float(vision.get("timeout_s"), key="vision.timeout_s", min_v=0.1),
        ),
        images=ImageFetchConfig(
            timeout_s=_as_float(images.get("timeout_s"), key="images.timeout_s", min_v=0.1),
            min_bytes=_as_int(images.get("min_bytes"), key="images.min_bytes", min_v=0),
            allowed_media_types=tuple(
                _as_str(t, key="images.allowed_media_types").strip().lower()
                for t in (images.get("allowed_media_types") or [])
            ),
        ),
        limits=LimitsConfig(
            max_items_per_job=_as_int(limits.get("max_items_per_job"), key="limits.max_items_per_job", min_v=1),
            list_default_limit=_as_int(limits.get("list_default_limit"), key="limits.list_default_limit", min_v=1),
            list_max_limit=_as_int(limits.get("list_max_limit"), key="limits.list_max_limit", min_v=1),
        ),
        kinds={str(k): dict(v) for k, v in kinds.items()},
    )

    # Validate per-kind overrides eagerly so a typo fails at startup, not mid-job.
    for kind in app_cfg.kinds:
        engine_config_for(app_cfg, kind)

    return app_cfg
