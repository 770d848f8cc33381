from __future__ import annotations

from typing import List, Optional

from packages.common.constants import BACKFILL_LAG_S, MAX_DATAPOINTS_PER_REQUEST
from packages.common.datetime_utils import floor_ts_to_granularity, now_s

from packages.backfill.types import DateRange


def generate_dates(anchor_s: int, granularity_s: int, datapoints: int = MAX_DATAPOINTS_PER_REQUEST) -> DateRange:
    """One request-sized range ending at anchor_s."""
    return DateRange(
        start_s=int(anchor_s) - datapoints * granularity_s,
        end_s=int(anchor_s),
        granularity_s=granularity_s,
    )


# Query bounds are sent at minute precision, so the anchor only drops seconds.
ANCHOR_PRECISION_S = 60


def backfill_anchor(now: int, granularity_s: int) -> int:
    """now - 1 day truncated to the minute, whatever the granularity."""
    return floor_ts_to_granularity(now - BACKFILL_LAG_S, min(ANCHOR_PRECISION_S, granularity_s))


def plan_initial_ranges(
    datapoints: int,
    granularity_s: int,
    now: Optional[int] = None,
    max_per_request: int = MAX_DATAPOINTS_PER_REQUEST,
) -> List[DateRange]:
    """
    Walk a cursor back from (now - 1 day) in request-sized steps.

    Union of the result is exactly [anchor - datapoints*granularity, anchor),
    newest chunk first. The oldest chunk is shortened when datapoints is not a
    multiple of max_per_request.
    """
    if datapoints <= 0:
        return []

    cursor = backfill_anchor(now_s() if now is None else int(now), granularity_s)
    ranges: List[DateRange] = []
    remaining = int(datapoints)

    while remaining > 0:
        n = min(max_per_request, remaining)
        r = generate_dates(cursor, granularity_s, n)
        ranges.append(r)
        cursor = r.start_s
        remaining -= n

    return ranges


def split_range(r: DateRange, k: int = 2) -> List[DateRange]:
    """
    Cut r into k contiguous ascending pieces on the granularity grid.

    The union equals [r.lo, r.hi) and the granularity is unchanged. A range with
    fewer than k buckets yields one piece per bucket; a single bucket is returned
    as-is since it cannot be cut.
    """
    if k < 2:
        raise ValueError(f"split divisor must be >= 2 (got {k})")

    g = r.granularity_s
    lo, hi = r.lo, r.hi
    buckets = (hi - lo) // g
    parts = min(k, buckets)
    if parts < 2:
        return [r]

    bounds = [lo + (buckets * i // parts) * g for i in range(parts)]
    bounds.append(hi)

    return [
        DateRange(start_s=bounds[i], end_s=bounds[i + 1], granularity_s=g)
        for i in range(parts)
    ]
