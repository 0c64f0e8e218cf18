from __future__ import annotations

import base64
import json

import pytest

from jobrunner.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor


def _token(obj: object) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode("utf-8")).decode("ascii").rstrip("=")


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, job_id="job_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.job_id == c.job_id
    assert "=" not in encode_cursor(c)


def test_cursor_after_page_key() -> None:
    assert Cursor.after(None) is None
    c = Cursor.after((10, "job_x"))
    assert c == Cursor(created_at=10.0, job_id="job_x")
    assert c.as_key() == (10.0, "job_x")


@pytest.mark.parametrize(
    "value",
    [
        "not-a-valid-cursor",
        "",
        "W10",
        _token([2, 1.0, "job_x"]),
        _token([1, "yesterday", "job_x"]),
        _token([1, 1.0, ""]),
        _token({"created_at": 1.0, "id": "job_x"}),
    ],
)
def test_cursor_invalid(value: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(value)
