import sys
sys.path.insert(0, '.')

from datetime import datetime, timedelta, timezone

import pytest

from analytics.corridor import (
    AnalyseMode,
    Corridor,
    CorridorAnalyzer,
    CorridorParams,
    time_interval_by_days,
)
from market.models import Candle, CandleInterval, Instrument
from market.price import Price

STEP = Price(0, 10_000_000)
T0 = datetime(2023, 5, 10, 7, 0, tzinfo=timezone.utc)


def _candle(i, open_, close, low, high):
    return Candle('uid-1', CandleInterval.ONE_MINUTE, T0 + timedelta(minutes=i),
                  Price.from_decimal(open_), Price.from_decimal(close),
                  Price.from_decimal(high), Price.from_decimal(low), 1)


def _instrument():
    return Instrument('uid-1', lot=1, min_price_increment=STEP)


def test_threshold_includes_round_trip_commission():
    params = CorridorParams(min_profit_pct=0.5, commission_pct=0.05)
    assert params.threshold_pct == pytest.approx(0.6)


def test_params_from_config_section():
    params = CorridorParams.from_config({'analyse': 'math_stat', 'min_profit_pct': 0.3,
                                         'low_percentile': 10, 'high_percentile': 90})
    assert params.mode == AnalyseMode.MATH_STAT
    assert params.min_profit_pct == 0.3
    assert (params.low_percentile, params.high_percentile) == (10.0, 90.0)


def test_math_stat_corridor_from_close_percentiles():
    candles = [_candle(i, 100 + i, 100 + i, 99, 111) for i in range(10)]
    analyzer = CorridorAnalyzer(CorridorParams(mode=AnalyseMode.MATH_STAT,
                                               low_percentile=10, high_percentile=90))

    corridor = analyzer.analyse(_instrument(), candles)

    assert corridor.low == Price(100, 900_000_000)
    assert corridor.high == Price(108, 100_000_000)
    assert corridor.score == pytest.approx(7.2 / 104.5 * 100 * 10)


def test_best_width_covers_the_traded_range():
    candles = [_candle(i, 100, 102, '99.5', '102.5') for i in range(30)]
    analyzer = CorridorAnalyzer(CorridorParams(mode=AnalyseMode.BEST_WIDTH, min_profit_pct=0.5))

    corridor = analyzer.analyse(_instrument(), candles)

    assert corridor.low == Price(99, 500_000_000)
    assert corridor.high == Price(102, 500_000_000)
    assert corridor.is_tradable


def _oscillating(count=200):
    """Closes alternate between 100 and 102; each candle spans only 0.10."""
    candles = []
    for i in range(count):
        close = 100 if i % 2 == 0 else 102
        candles.append(_candle(i, close, close, f"{close - 1}.95", f"{close}.05"))
    return candles


def test_narrow_closes_are_rejected_by_math_stat():
    candles = [_candle(i, 100, 100, '99.9', '100.1') for i in range(30)]
    analyzer = CorridorAnalyzer(CorridorParams(mode=AnalyseMode.MATH_STAT, min_profit_pct=1.0))

    corridor = analyzer.analyse(_instrument(), candles)

    assert corridor.rejected
    assert corridor.score == 0.0
    assert not corridor.is_tradable


def test_math_stat_corridor_is_tradable_when_no_candle_spans_it():
    analyzer = CorridorAnalyzer(CorridorParams(mode=AnalyseMode.MATH_STAT, min_profit_pct=0.5))

    corridor = analyzer.analyse(_instrument(), _oscillating())

    assert corridor.low == Price(100, 0)
    assert corridor.high == Price(102, 0)
    assert corridor.score == 0.0
    assert corridor.is_tradable


def test_best_width_corridor_is_tradable_when_no_candle_spans_it():
    analyzer = CorridorAnalyzer(CorridorParams(mode=AnalyseMode.BEST_WIDTH, min_profit_pct=0.5))

    corridor = analyzer.analyse(_instrument(), _oscillating())

    assert corridor.score == 0.0
    assert corridor.width_pct >= 0.5
    assert corridor.is_tradable


def test_no_candles_gives_empty_corridor():
    corridor = CorridorAnalyzer().analyse(_instrument(), [])
    assert corridor == Corridor('uid-1', Price(), Price(), 0.0, rejected=True)
    assert not corridor.is_tradable


def test_rank_keeps_best_tradable():
    corridors = [
        Corridor('a', Price(10, 0), Price(11, 0), 1.0),
        Corridor('b', Price(10, 0), Price(11, 0), 5.0),
        Corridor('c', Price(10, 0), Price(11, 0), 0.0),
        Corridor('d', Price(10, 0), Price(12, 0), 3.0),
    ]
    ranked = CorridorAnalyzer().rank(corridors, 2)
    assert [c.instrument_uid for c in ranked] == ['b', 'd']


def test_rank_fills_up_with_zero_scores_but_skips_rejected():
    corridors = [
        Corridor('a', Price(10, 0), Price(11, 0), 0.0),
        Corridor('b', Price(10, 0), Price(11, 0), 2.0),
        Corridor('c', Price(10, 0), Price(11, 0), 0.0, rejected=True),
        Corridor('d', Price(10, 0), Price(10, 0), 0.0),
    ]
    ranked = CorridorAnalyzer().rank(corridors, 3)
    assert [c.instrument_uid for c in ranked] == ['b', 'a']


def test_corridor_width_and_membership():
    corridor = Corridor('a', Price(100, 0), Price(102, 0), 1.0)
    assert corridor.width_pct == pytest.approx(2.0)
    assert corridor.contains(Price(101, 0))
    assert not corridor.contains(Price(102, 10_000_000))


def test_lookback_window_skips_weekends():
    monday = datetime(2023, 5, 15, 12, 30, tzinfo=timezone.utc)
    start, end = time_interval_by_days(2, monday)
    assert end == datetime(2023, 5, 15, tzinfo=timezone.utc)
    assert start == datetime(2023, 5, 11, tzinfo=timezone.utc)
