from typing import Optional

import pytest
from fastapi import HTTPException

from market_chat.dependencies import get_current_user_id, parse_user_id


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("7", 7),
        (" 12 ", 12),
        ("0", None),
        ("-3", None),
        ("abc", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_user_id(raw: Optional[str], expected: Optional[int]) -> None:
    assert parse_user_id(raw) == expected


@pytest.mark.asyncio
async def test_current_user_id_rejects_missing_header() -> None:
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user_id(None)

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_current_user_id() -> None:
    assert await get_current_user_id("5") == 5
