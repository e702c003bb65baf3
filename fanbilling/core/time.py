from __future__ import annotations

import time
from datetime import datetime, timezone

DAY_SECONDS = 24 * 3600


def now_ts() -> int:
    return int(time.time())


def iso_from_ts(ts: int | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def month_start_ts(ts: int, months_back: int = 0) -> int:
    """Epoch seconds of 00:00 UTC on the first day of the month containing ``ts``,
    shifted ``months_back`` calendar months into the past."""
    dt = datetime.fromtimestamp(int(ts), tz=timezone.utc)
    month_index = dt.year * 12 + (dt.month - 1) - months_back
    year, month = divmod(month_index, 12)
    return int(datetime(year, month + 1, 1, tzinfo=timezone.utc).timestamp())


def ts_from_datetime(dt: datetime) -> int:
    """Epoch seconds; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())
