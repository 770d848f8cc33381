from __future__ import annotations

from datetime import datetime, timezone


def s_to_iso8601_minute(ts_s: int) -> str:
    """
    Epoch seconds -> minute-precision UTC ISO8601, e.g. 1700000000 -> "2023-11-14T22:13Z".
    The candles endpoint is queried at minute precision.
    """
    dt = datetime.fromtimestamp(int(ts_s), tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%MZ")


def s_to_iso8601_z(ts_s: int) -> str:
    dt = datetime.fromtimestamp(int(ts_s), tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def now_s() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp())


def floor_ts_to_granularity(ts_s: int, granularity_s: int) -> int:
    return (int(ts_s) // granularity_s) * granularity_s
