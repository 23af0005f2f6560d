from __future__ import annotations

import pytest

from app.utils.cursor import CursorError, after_cursor, decode_cursor, encode_cursor


def test_cursor_is_url_safe_and_opaque() -> None:
    token = encode_cursor(1_700_000_000_123, "iv/with+odd=chars")
    assert "=" not in token and "/" not in token and "+" not in token
    assert decode_cursor(token) == (1_700_000_000_123, "iv/with+odd=chars")


@pytest.mark.parametrize("token", ["", "not-base64!", "eyJ0cyI6ICJ4In0"])
def test_bad_cursor(token: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(token)


def test_after_cursor_orders_by_timestamp_then_id() -> None:
    c = (100, "b")
    assert after_cursor(100, "c", c)
    assert after_cursor(101, "a", c)
    assert not after_cursor(100, "b", c)
    assert not after_cursor(99, "z", c)
    assert after_cursor(0, "", None)
