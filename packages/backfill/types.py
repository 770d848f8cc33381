from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Candle:
    # Field order follows the provider's row layout: [time, low, high, open, close, volume]
    ts_s: int
    low: float
    high: float
    open: float
    close: float
    volume: float


@dataclass(frozen=True)
class DateRange:
    """
    Bounds in epoch seconds. Ordered ranges are half-open [start_s, end_s).
    start_s > end_s is legal: a blind retry swaps the bounds.
    """

    start_s: int
    end_s: int
    granularity_s: int

    @property
    def lo(self) -> int:
        return min(self.start_s, self.end_s)

    @property
    def hi(self) -> int:
        return max(self.start_s, self.end_s)

    @property
    def span_s(self) -> int:
        return self.hi - self.lo

    @property
    def datapoints(self) -> int:
        return self.span_s // self.granularity_s

    @property
    def is_reversed(self) -> bool:
        return self.start_s > self.end_s

    def swapped(self) -> "DateRange":
        return DateRange(start_s=self.end_s, end_s=self.start_s, granularity_s=self.granularity_s)


@dataclass(frozen=True)
class ImportJob:
    name: str
    product: str
    datapoints: int
    granularity_s: int
    created_at_s: int
    id: int | None = None  # assigned by the store


class CandleProvider(Protocol):
    async def fetch_candles(
        self,
        product: str,
        start_s: int,
        end_s: int,
        granularity_s: int,
    ) -> list[Candle]:
        """Return candle rows in provider order. Raise ProviderError subclasses on failure."""
        ...
