from __future__ import annotations

import tempfile
import time
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from jobrunner.config.load_config import EngineConfig, load_app_config
from jobrunner.llm.openai_compat import OpenAICompatibleVisionClient
from jobrunner.runtime import engine
from jobrunner.runtime.errors import HandlerUnavailableError
from jobrunner.runtime.hero_audit import (
    HeroAuditHandler,
    HeroAuditPayload,
    build_hero_audit_handler,
    parse_verdict,
)
from jobrunner.runtime.registry import default_registry
from jobrunner.runtime.types import HandlerContext
from jobrunner.storage.sqlite_store import SQLiteStore


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 6000


def _status_error(code: int) -> openai.APIStatusError:
    request = httpx.Request("POST", "https://vision.example/v1/chat/completions")
    return openai.APIStatusError(f"HTTP {code}", response=httpx.Response(code, request=request), body=None)


class _FakeCompletions:
    def __init__(self, replies: list[Any]) -> None:
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class _SlowCompletions(_FakeCompletions):
    def __init__(self, replies: list[Any], *, delay_s: float) -> None:
        super().__init__(replies)
        self.delay_s = delay_s

    def create(self, **kwargs: Any) -> Any:
        time.sleep(self.delay_s)
        return super().create(**kwargs)


class _Listings:
    def __init__(self) -> None:
        self.cleared: list[str] = []

    def clear_hero_image(self, listing_id: str) -> None:
        self.cleared.append(listing_id)


def _image_transport(status: int = 200, *, content: bytes = PNG_BYTES, content_type: str = "image/png") -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, headers={"content-type": content_type}, content=content)

    return httpx.MockTransport(handler)


def _handler(
    replies: list[Any],
    *,
    transport: httpx.MockTransport | None = None,
    listings: _Listings | None = None,
    delay_s: float = 0.0,
) -> tuple[HeroAuditHandler, _FakeCompletions]:
    completions = _SlowCompletions(replies, delay_s=delay_s) if delay_s else _FakeCompletions(replies)
    vision = OpenAICompatibleVisionClient(
        model="test-vision",
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
    )
    transport = transport or _image_transport()
    handler = HeroAuditHandler(
        vision=vision,
        http_client_factory=lambda: httpx.Client(transport=transport),
        cfg=load_app_config(),
        listings=listings,
        sleep=lambda _s: None,
    )
    return handler, completions


def _ctx() -> HandlerContext:
    return HandlerContext(job_id="job_test", task_id="task_test", seq=1, attempt=1, timeout_s=30.0)


PAYLOAD = HeroAuditPayload(listing_id="l-1", listing_name="Acme Plumbing", hero_image_url="https://img.example/1.png")


@pytest.mark.parametrize(
    ("text", "verdict", "reason"),
    [
        ("GOOD: storefront with signage", "GOOD", "storefront with signage"),
        ("VERDICT: GOOD: ok", "GOOD", "ok"),
        ("BAD_CONTACT - shows the equipment", "BAD_CONTACT", "shows the equipment"),
        ("bad_other: logo only", "BAD_OTHER", "logo only"),
        ("I am not sure", "BAD_OTHER", "I am not sure"),
    ],
)
def test_parse_verdict(text: str, verdict: str, reason: str) -> None:
    assert parse_verdict(text) == (verdict, reason)


def test_good_image_is_kept() -> None:
    listings = _Listings()
    handler, completions = _handler(["GOOD: clear storefront"], listings=listings)

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.succeeded is True
    assert outcome.verdict == "GOOD"
    assert outcome.result["action_taken"] == "kept"
    assert outcome.counters == {}
    assert listings.cleared == []

    content = completions.calls[0]["messages"][0]["content"]
    assert content[0]["image_url"]["url"].startswith("data:image/png;base64,")


def test_bad_image_is_cleared_through_listing_hook() -> None:
    listings = _Listings()
    handler, _ = _handler(["BAD_OTHER: contact card"], listings=listings)

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.succeeded is False
    assert outcome.verdict == "BAD_OTHER"
    assert outcome.counters == {"cleared": 1}
    assert outcome.result["action_taken"] == "cleared"
    assert listings.cleared == ["l-1"]


def test_bad_image_without_hook_is_flagged() -> None:
    handler, _ = _handler(["BAD_CONTACT: wrong equipment"])

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.verdict == "BAD_CONTACT"
    assert outcome.counters == {"flagged": 1}
    assert outcome.result["action_taken"] == "flagged"


def test_overloaded_model_is_retried() -> None:
    handler, completions = _handler([_status_error(529), _status_error(503), "GOOD: fine"])

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.succeeded is True
    assert len(completions.calls) == 3


def test_rejected_request_is_not_retried() -> None:
    handler, completions = _handler([_status_error(400), "GOOD: never reached"])

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.succeeded is False
    assert outcome.verdict == "fetch_failed"
    assert outcome.result["action_taken"] == "kept"
    assert len(completions.calls) == 1


def test_exhausted_retries_keep_the_image() -> None:
    handler, completions = _handler([_status_error(529)] * 4)

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.verdict == "fetch_failed"
    assert outcome.error.startswith("Gave up after 4 attempts")
    assert len(completions.calls) == 4


@pytest.mark.parametrize(
    "transport",
    [
        _image_transport(404),
        _image_transport(content=b"tiny"),
        _image_transport(content_type="text/html"),
    ],
)
def test_unusable_image_fails_before_classification(transport: httpx.MockTransport) -> None:
    handler, completions = _handler(["GOOD"], transport=transport)

    outcome = handler(PAYLOAD, _ctx())
    assert outcome.verdict == "fetch_failed"
    assert completions.calls == []


def test_build_handler_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = load_app_config()
    monkeypatch.delenv(cfg.vision.api_key_secret, raising=False)

    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            with pytest.raises(HandlerUnavailableError) as e:
                build_hero_audit_handler(cfg, store)
            assert e.value.missing == [cfg.vision.api_key_secret]

            store.put_secret(cfg.vision.api_key_secret, '"sk-test"')
            assert isinstance(build_hero_audit_handler(cfg, store), HeroAuditHandler)
        finally:
            store.close()


def test_timed_out_audit_does_not_clear_listing_afterwards() -> None:
    listings = _Listings()
    handler, completions = _handler(["BAD_OTHER: contact card"] * 2, listings=listings, delay_s=1.0)
    settings = EngineConfig(
        batch_size=2,
        parallel=True,
        parallel_workers=1,
        stuck_task_timeout_s=90.0,
        max_task_attempts=3,
        item_timeout_s=0.3,
    )
    items = [{"listing_id": f"l-{i}", "hero_image_url": f"https://img.example/{i}.png"} for i in (1, 2)]

    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/jobs.db")
        try:
            kind = default_registry().get("hero_audit")
            job = engine.start_job(store, kind=kind, config=load_app_config(), items=items)
            res = engine.process_batch(store, job.job_id, kind=kind, handler=handler, settings=settings)
            assert (res.processed, res.succeeded) == (2, 0)

            # Let the stragglers reach the point where they would clear.
            time.sleep(1.5)
            assert len(completions.calls) == 2
            assert listings.cleared == []

            verdicts = [t["verdict"] for t in engine.task_traces(store, job.job_id)["items"]]
            assert verdicts == ["timeout", "timeout"]
            counters = engine.job_status(store, job.job_id)["counters"]
            assert counters.get("cleared", 0) == counters.get("flagged", 0) == 0
        finally:
            store.close()
