from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from jobrunner.config.load_config import ConfigError, engine_config_for, load_app_config
from jobrunner.utils.retry import RetryPolicy


def _write(td: str, text: str) -> Path:
    path = Path(td) / "cfg.toml"
    path.write_text(text, encoding="utf-8")
    return path


def _base_toml(extra: str = "") -> str:
    shipped = Path(__file__).resolve().parents[1] / "config" / "default.toml"
    return shipped.read_text(encoding="utf-8") + "\n" + extra


def test_shipped_defaults_load() -> None:
    cfg = load_app_config()
    assert cfg.retry.transient_status_codes == (429, 503, 529)
    assert cfg.images.min_bytes == 5000

    policy = RetryPolicy.from_config(cfg.retry)
    assert policy.max_attempts == 4
    assert policy.is_transient_status(529)
    assert not policy.is_transient_status(500)


def test_kind_overrides_fall_back_to_engine_defaults() -> None:
    cfg = load_app_config()
    hero = engine_config_for(cfg, "hero_audit")
    assert (hero.batch_size, hero.parallel, hero.parallel_workers) == (10, True, 5)
    assert hero.max_task_attempts == cfg.engine.max_task_attempts

    assert engine_config_for(cfg, "unlisted_kind") == cfg.engine


def test_unknown_kind_key_fails_at_load() -> None:
    with tempfile.TemporaryDirectory() as td:
        path = _write(td, _base_toml("[kinds.broken]\nbatchsize = 3\n"))
        with pytest.raises(ConfigError, match="kinds.broken"):
            load_app_config(path)


@pytest.mark.parametrize(
    "text",
    [
        "[engine]\nbatch_size = 0\n",
        "[engine]\nbatch_size = 1\nparallel = \"yes\"\n",
        "not = [valid",
    ],
)
def test_invalid_config_raises(text: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        with pytest.raises(ConfigError):
            load_app_config(_write(td, text))


def test_missing_file_raises() -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_app_config(Path("/nonexistent/jobrunner.toml"))
