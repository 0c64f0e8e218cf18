"""Hero-image audit job kind.

Each task fetches one listing's hero image, asks a vision model for a
verdict, and clears the image from the listing when it is unusable:

- GOOD          keep the image (task succeeded)
- BAD_CONTACT   clear it
- BAD_OTHER     clear it
- fetch_failed  image or model unreachable after retries; keep it

Clearing goes through an optional `ListingUpdates` collaborator. Without
one, bad images are only flagged in the task result.
"""

from __future__ import annotations

import re
from typing import Callable, Protocol

import httpx
from pydantic import BaseModel, Field

from jobrunner.config.load_config import AppConfig
from jobrunner.config.secrets import lookup_secret
from jobrunner.llm.openai_compat import OpenAICompatibleVisionClient
from jobrunner.runtime.errors import HandlerUnavailableError
from jobrunner.runtime.types import Handler, HandlerContext, TaskOutcome
from jobrunner.storage.sqlite_store import SQLiteStore
from jobrunner.tools.images import fetch_image
from jobrunner.utils.retry import PermanentError, RetryExhaustedError, RetryPolicy, call_with_retry


VERDICTS = ("GOOD", "BAD_CONTACT", "BAD_OTHER")

HERO_AUDIT_PROMPT = """You are quality-checking the hero image of a business directory listing.

Classify this image as one of:
GOOD - the image represents the business (exterior, facility, signage, equipment in use).
BAD_CONTACT - the image shows equipment the listing explicitly claims not to use.
BAD_OTHER - unrelated or unusable (other business, logo only, contact card, blurry or dark).

When in doubt, prefer GOOD.

Reply with only the verdict and a one-sentence reason in this exact format:
VERDICT: reason"""


class HeroAuditPayload(BaseModel):
    listing_id: str = Field(min_length=1)
    listing_name: str = ""
    hero_image_url: str = Field(min_length=1)


class ListingUpdates(Protocol):
    def clear_hero_image(self, listing_id: str) -> None: ...


def parse_verdict(text: str) -> tuple[str, str]:
    """Parse `VERDICT: reason`; anything unrecognised counts as BAD_OTHER."""
    clean = re.sub(r"^VERDICT:\s*", "", (text or "").strip(), flags=re.IGNORECASE).strip()
    upper = clean.upper()
    for verdict in ("GOOD", "BAD_CONTACT"):
        if upper.startswith(verdict):
            return verdict, re.sub(rf"^{verdict}[:\s-]*", "", clean, flags=re.IGNORECASE).strip()
    return "BAD_OTHER", re.sub(r"^BAD_OTHER[:\s-]*", "", clean, flags=re.IGNORECASE).strip()


class HeroAuditHandler:
    def __init__(
        self,
        *,
        vision: OpenAICompatibleVisionClient,
        http_client_factory: Callable[[], httpx.Client],
        cfg: AppConfig,
        listings: ListingUpdates | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._vision = vision
        self._http_client_factory = http_client_factory
        self._images = cfg.images
        self._policy = RetryPolicy.from_config(cfg.retry)
        self._listings = listings
        self._sleep = sleep

    def __call__(self, payload: HeroAuditPayload, ctx: HandlerContext) -> TaskOutcome:
        try:
            with self._http_client_factory() as http:
                image = call_with_retry(
                    lambda: fetch_image(
                        payload.hero_image_url,
                        client=http,
                        policy=self._policy,
                        timeout_s=self._images.timeout_s,
                        min_bytes=self._images.min_bytes,
                        allowed_media_types=self._images.allowed_media_types,
                    ),
                    policy=self._policy,
                    sleep=self._sleep,
                )
            ctx.check_cancelled()
            text = call_with_retry(
                lambda: self._vision.classify_image(
                    prompt=HERO_AUDIT_PROMPT,
                    media_type=image.media_type,
                    data_b64=image.as_base64(),
                ),
                policy=self._policy,
                sleep=self._sleep,
            )
        except (PermanentError, RetryExhaustedError) as e:
            return TaskOutcome(
                succeeded=False,
                verdict="fetch_failed",
                reason=str(e),
                error=str(e),
                result={"action_taken": "kept", "listing_id": payload.listing_id},
            )

        verdict, reason = parse_verdict(text)
        if verdict == "GOOD":
            return TaskOutcome(
                succeeded=True,
                verdict=verdict,
                reason=reason,
                result={"action_taken": "kept", "listing_id": payload.listing_id},
            )

        if self._listings is None:
            action = "flagged"
        else:
            # The engine may already have recorded this task as timed out.
            ctx.check_cancelled()
            # Clearing twice is harmless, so a reclaimed task may repeat it.
            self._listings.clear_hero_image(payload.listing_id)
            action = "cleared"
        return TaskOutcome(
            succeeded=False,
            verdict=verdict,
            reason=reason,
            result={"action_taken": action, "listing_id": payload.listing_id},
            counters={action: 1},
        )


def build_hero_audit_handler(
    cfg: AppConfig,
    store: SQLiteStore | None = None,
    *,
    listings: ListingUpdates | None = None,
) -> Handler:
    api_key = lookup_secret(cfg.vision.api_key_secret, store=store)
    if not api_key:
        raise HandlerUnavailableError(
            f"Missing vision API key ({cfg.vision.api_key_secret}).",
            missing=[cfg.vision.api_key_secret],
        )
    vision = OpenAICompatibleVisionClient(
        base_url=cfg.vision.api_base,
        api_key=api_key,
        model=cfg.vision.model,
        timeout_s=cfg.vision.timeout_s,
        max_tokens=cfg.vision.max_tokens,
        transient_status_codes=cfg.retry.transient_status_codes,
    )
    return HeroAuditHandler(
        vision=vision,
        http_client_factory=lambda: httpx.Client(timeout=cfg.images.timeout_s),
        cfg=cfg,
        listings=listings,
    )
