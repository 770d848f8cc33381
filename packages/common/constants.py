from __future__ import annotations

# Coinbase Pro caps /candles responses at 300 buckets per request.
MAX_DATAPOINTS_PER_REQUEST: int = 300

# Bucket widths (seconds) the candles endpoint accepts.
AVAILABLE_GRANULARITIES: tuple[int, ...] = (60, 300, 900, 3600, 21600, 86400)

# Backfills end one day before "now".
BACKFILL_LAG_S: int = 86_400

DEFAULT_PRODUCT: str = "BTC-EUR"
DEFAULT_DATAPOINTS: int = 9000
DEFAULT_GRANULARITY: int = 60
