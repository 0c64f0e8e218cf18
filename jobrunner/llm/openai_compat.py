from __future__ import annotations

import os
from typing import Any

import openai

from jobrunner.utils.retry import DEFAULT_TRANSIENT_STATUS_CODES, PermanentError, TransientError


class LLMConfigError(RuntimeError):
    pass


class OpenAICompatibleVisionClient:
    """Minimal OpenAI-compatible client for single-image classification prompts.

    We keep this small on purpose:
    - providers/models are swapped via OpenAI-compatible gateways
    - the SDK's own retries are disabled; callers wrap `classify_image` with
      `call_with_retry` so every external call shares one backoff policy
    - failures are mapped onto TransientError / PermanentError
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        max_tokens: int = 120,
        transient_status_codes: tuple[int, ...] = DEFAULT_TRANSIENT_STATUS_CODES,
        client: Any | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.model = model or os.getenv("VISION_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s
        self.max_tokens = int(max_tokens)
        self.transient_status_codes = tuple(transient_status_codes)

        if client is not None:
            self._client = client
            return

        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")
        self._client = openai.OpenAI(
            base_url=self.base_url,
            api_key=api_key,
            timeout=self.timeout_s,
            max_retries=0,
        )

    def classify_image(self, *, prompt: str, media_type: str, data_b64: str) -> str:
        """Send one image plus instructions; return the model's text reply."""
        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "image_url", "image_url": {"url": f"data:{media_type};base64,{data_b64}"}},
                            {"type": "text", "text": prompt},
                        ],
                    }
                ],
            )
        except openai.APIStatusError as e:
            message = f"Vision API error {e.status_code}"
            if int(e.status_code) in self.transient_status_codes:
                raise TransientError(f"{message} (overloaded)", status_code=int(e.status_code)) from e
            raise PermanentError(message, status_code=int(e.status_code)) from e
        except openai.APIConnectionError as e:
            # Includes APITimeoutError.
            raise TransientError(f"Vision API unreachable: {e}") from e

        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise PermanentError("Vision API returned no choices")
        return (choices[0].message.content or "").strip()
