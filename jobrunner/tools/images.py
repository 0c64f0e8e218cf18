from __future__ import annotations

import base64
from dataclasses import dataclass

import httpx

from jobrunner.utils.retry import PermanentError, RetryPolicy, TransientError, error_for_status


@dataclass(frozen=True)
class FetchedImage:
    url: str
    media_type: str
    data: bytes

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def fetch_image(
    url: str,
    *,
    client: httpx.Client,
    policy: RetryPolicy,
    timeout_s: float,
    min_bytes: int,
    allowed_media_types: tuple[str, ...],
) -> FetchedImage:
    """Download one image, rejecting anything a vision model should not see.

    Raises TransientError for timeouts/overload and PermanentError for bad
    URLs, 4xx responses, unsupported content types and tiny placeholder files.
    """
    try:
        resp = client.get(url, timeout=float(timeout_s), follow_redirects=True)
    except httpx.TimeoutException as e:
        raise TransientError(f"Timed out fetching image: {url}") from e
    except httpx.TransportError as e:
        raise TransientError(f"Network error fetching image {url}: {e}") from e
    except httpx.InvalidURL as e:
        raise PermanentError(f"Invalid image URL: {url!r}") from e

    if not resp.is_success:
        raise error_for_status(resp.status_code, f"HTTP {resp.status_code} fetching image {url}", policy=policy)

    content_type = resp.headers.get("content-type") or "image/jpeg"
    media_type = content_type.split(";")[0].strip().lower()
    if allowed_media_types and media_type not in allowed_media_types:
        raise PermanentError(f"Unsupported content type {media_type!r} for {url}")

    data = resp.content
    if len(data) < int(min_bytes):
        raise PermanentError(f"Image too small ({len(data)} bytes) at {url}")

    return FetchedImage(url=str(resp.url), media_type=media_type, data=data)
