from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time, timezone-aware UTC at microsecond precision."""
    return datetime.now(timezone.utc)


def sql_literal(value: object) -> str:
    """Render a Python scalar as a Delta MERGE SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"
