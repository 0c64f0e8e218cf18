"""Opaque keyset cursors for newest-first job listings.

A token is unpadded urlsafe base64 over a compact JSON array
`[version, created_at, job_id]`. The version lets the key change later
without old tokens decoding into the wrong position.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass
from typing import Any

CURSOR_VERSION = 1


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    created_at: float
    job_id: str

    @classmethod
    def after(cls, key: tuple[float, str] | None) -> Cursor | None:
        """Cursor positioned after the last row of a page (`list_jobs_page`'s `next_cursor`)."""
        if key is None:
            return None
        created_at, job_id = key
        return cls(created_at=float(created_at), job_id=str(job_id))

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.job_id)


def encode_cursor(cursor: Cursor) -> str:
    packed = json.dumps([CURSOR_VERSION, cursor.created_at, cursor.job_id], separators=(",", ":"))
    return base64.urlsafe_b64encode(packed.encode("utf-8")).decode("ascii").rstrip("=")


def _unpack(token: str) -> Any:
    padded = token + "=" * (-len(token) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise CursorError("Invalid cursor") from e


def decode_cursor(value: str) -> Cursor:
    token = (value or "").strip()
    if not token:
        raise CursorError("Empty cursor")

    data = _unpack(token)
    if not isinstance(data, list) or len(data) != 3 or data[0] != CURSOR_VERSION:
        raise CursorError("Invalid cursor")
    _, created_at, job_id = data
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)) or not math.isfinite(created_at):
        raise CursorError("Invalid cursor: bad timestamp")
    if not isinstance(job_id, str) or not job_id:
        raise CursorError("Invalid cursor: bad job id")
    return Cursor(created_at=float(created_at), job_id=job_id)
