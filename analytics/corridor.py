import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from market.models import Candle, Instrument
from market.price import Price, ZERO


logger = logging.getLogger(__name__)


class AnalyseMode(str, Enum):
    BEST_WIDTH = 'best_width'
    MATH_STAT = 'math_stat'
    SIMPLEST = 'simplest'


@dataclass(frozen=True)
class CorridorParams:
    mode: AnalyseMode = AnalyseMode.BEST_WIDTH
    min_profit_pct: float = 0.5
    commission_pct: float = 0.0
    low_percentile: float = 5.0
    high_percentile: float = 95.0

    @property
    def threshold_pct(self) -> float:
        """Narrowest corridor worth trading: the profit target plus a round trip of commission."""
        return self.min_profit_pct + 2 * self.commission_pct

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'CorridorParams':
        return cls(
            mode=AnalyseMode(cfg.get('analyse', AnalyseMode.BEST_WIDTH.value)),
            min_profit_pct=float(cfg.get('min_profit_pct', 0.5)),
            commission_pct=float(cfg.get('commission_pct', 0.0)),
            low_percentile=float(cfg.get('low_percentile', 5.0)),
            high_percentile=float(cfg.get('high_percentile', 95.0)),
        )


@dataclass(frozen=True)
class Corridor:
    instrument_uid: str
    low: Price
    high: Price
    score: float = 0.0
    rejected: bool = False

    @property
    def width_pct(self) -> float:
        low = self.low.to_float()
        if low <= 0:
            return 0.0
        return (self.high.to_float() - low) / low * 100

    @property
    def is_tradable(self) -> bool:
        # a zero score only ranks the corridor last; the width check alone rejects it
        return not self.rejected and self.high > self.low

    def contains(self, price: Price) -> bool:
        return self.low <= price <= self.high


class _CandleTicks:
    """Candle ranges as integer tick counts so level arithmetic stays exact."""

    def __init__(self, candles: Sequence[Candle], step: Price):
        self.step = step
        self.lows = np.array([c.low.ticks(step) for c in candles], dtype=np.int64)
        self.highs = np.array([c.high.ticks(step) for c in candles], dtype=np.int64)
        self.closes = np.array([c.close.to_float() for c in candles], dtype=float)
        self.mids = np.array([Price.from_decimal(c.mid_price(), step).to_float() for c in candles], dtype=float)

    def crosses(self, level: int) -> int:
        return int(np.count_nonzero((self.lows <= level) & (level <= self.highs)))

    def interval_crosses(self, lower: int, upper: int) -> int:
        return int(np.count_nonzero((upper <= self.highs) & (lower >= self.lows)))

    def last_touch(self, level: int) -> int:
        touched = np.flatnonzero((self.lows <= level) & (level <= self.highs))
        return int(touched[-1]) if touched.size else -1

    def crosses_by_level(self) -> Tuple[int, np.ndarray]:
        """Candle crosses for every tick between the lowest low and the highest high."""
        base = int(self.lows.min())
        size = int(self.highs.max()) - base + 2
        marks = np.zeros(size, dtype=np.int64)
        np.add.at(marks, self.lows - base, 1)
        np.add.at(marks, self.highs - base + 1, -1)
        return base, np.cumsum(marks)[:-1]


class CorridorAnalyzer:
    """Finds the low/high price window an instrument oscillated in over recent candles."""

    def __init__(self, params: Optional[CorridorParams] = None):
        self.params = params or CorridorParams()

    def analyse(self, instrument: Instrument, candles: Sequence[Candle]) -> Corridor:
        if not candles:
            return Corridor(instrument.uid, ZERO, ZERO, 0.0, rejected=True)
        ticks = _CandleTicks(candles, instrument.min_price_increment)
        mode = self.params.mode
        if mode == AnalyseMode.MATH_STAT:
            return self._by_math_stat(instrument.uid, ticks)
        if mode == AnalyseMode.SIMPLEST:
            base, counts = ticks.crosses_by_level()
            start = base + int(np.argmax(counts))
            return self._by_width(instrument.uid, ticks, start, float(np.median(ticks.mids)))
        median = float(np.median(ticks.mids))
        start = Price.from_decimal(median).ticks(ticks.step)
        return self._by_width(instrument.uid, ticks, start, median)

    def rank(self, corridors: Iterable[Corridor], top_n: int) -> List[Corridor]:
        """Top ``top_n`` corridors by score, rejected ones excluded; zero scores still qualify."""
        ranked = sorted((c for c in corridors if c.is_tradable), key=lambda c: c.score, reverse=True)
        if len(ranked) < top_n:
            logger.warning("Only %s instruments have a tradable corridor, %s requested", len(ranked), top_n)
        return ranked[:top_n]

    # Best width ---------------------------------------------------------
    def _by_width(self, uid: str, ticks: _CandleTicks, start: int, median: float) -> Corridor:
        step = ticks.step.to_float()
        threshold = self.params.threshold_pct

        def width_pct(lower: int, upper: int) -> float:
            return (upper - lower) / lower * 100 if lower > 0 else 0.0

        def score(lower: int, upper: int) -> float:
            return (upper - lower) * step / median * 100 * ticks.interval_crosses(lower, upper)

        lower = upper = start
        while lower > 1 and width_pct(lower, upper) < threshold:
            lower, upper = self._widen(ticks, lower, upper)

        best = score(lower, upper)
        while lower > 1:
            next_lower, next_upper = self._widen(ticks, lower, upper)
            candidate = score(next_lower, next_upper)
            if candidate <= best:
                break
            lower, upper, best = next_lower, next_upper, candidate

        rejected = width_pct(lower, upper) < threshold
        return Corridor(uid, Price.from_ticks(lower, ticks.step), Price.from_ticks(upper, ticks.step),
                        0.0 if rejected else best, rejected)

    @staticmethod
    def _widen(ticks: _CandleTicks, lower: int, upper: int) -> Tuple[int, int]:
        """Move one tick toward whichever side's level crosses more candles."""
        upper_crosses = ticks.crosses(upper + 1)
        lower_crosses = ticks.crosses(lower - 1)
        if upper_crosses > lower_crosses:
            return lower, upper + 1
        if upper_crosses == lower_crosses and ticks.last_touch(upper + 1) > ticks.last_touch(lower - 1):
            return lower, upper + 1
        return lower - 1, upper

    # Percentiles --------------------------------------------------------
    def _by_math_stat(self, uid: str, ticks: _CandleTicks) -> Corridor:
        low_value = float(np.percentile(ticks.closes, self.params.low_percentile))
        high_value = float(np.percentile(ticks.closes, self.params.high_percentile))
        low = Price.from_decimal(low_value, ticks.step)
        high = Price.from_decimal(high_value, ticks.step)
        median = float(np.median(ticks.closes))
        lower, upper = low.ticks(ticks.step), high.ticks(ticks.step)
        corridor = Corridor(uid, low, high)
        if median <= 0 or corridor.width_pct < self.params.threshold_pct:
            return Corridor(uid, low, high, 0.0, rejected=True)
        width = (high.to_float() - low.to_float()) / median * 100
        return Corridor(uid, low, high, width * ticks.interval_crosses(lower, upper))


def time_interval_by_days(days: int, now: datetime) -> Tuple[datetime, datetime]:
    """Window ending at midnight of ``now``'s date that holds ``days`` weekdays."""
    end = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start = end
    counted = 0
    while counted < days:
        start -= timedelta(days=1)
        if start.weekday() < 5:
            counted += 1
    return start, end


def corridors_by_uid(corridors: Iterable[Corridor]) -> Dict[str, Corridor]:
    return {c.instrument_uid: c for c in corridors}
