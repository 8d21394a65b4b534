import sys
sys.path.insert(0, '.')

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pandas as pd
import pytest

from analytics.corridor import AnalyseMode, Corridor
from backtest.engine import BacktestConfig, IntervalBacktestEngine
from backtest.optimizer import Optimizer, SweepBounds, frange, generate_configs, write_report
from ingest.candle_store import CandleStore
from market.models import Candle, CandleInterval, Instrument
from market.price import Price
from risk.position_sizer import SizingDecision

UTC = timezone.utc
STEP = Price(0, 10_000_000)
MONDAY = datetime(2023, 5, 15, tzinfo=UTC)


def _sizing(uid, lot=1, quantity=1):
    instrument = Instrument(uid, lot=lot, min_price_increment=STEP)
    return SizingDecision(instrument, quantity, Price(100, 0) * (lot * quantity))


def _candle(uid, at, open_, close, low, high):
    return Candle(uid, CandleInterval.ONE_MINUTE, at, Price.from_decimal(open_), Price.from_decimal(close),
                  Price.from_decimal(high), Price.from_decimal(low), 1)


def _config(**overrides):
    values = dict(analyse=AnalyseMode.BEST_WIDTH, min_profit=0.5, stop_loss=2.0,
                  days_to_calculate=2, commission=0.0)
    values.update(overrides)
    return BacktestConfig(**values)


def _fill_store(path):
    """Two instruments swinging inside fixed ranges every half hour of every weekday session."""
    with CandleStore(path) as store:
        for uid, base in (('uid-a', 100), ('uid-b', 250)):
            candles = []
            for day in range(5):
                session = MONDAY + timedelta(days=day, hours=7)
                for i in range(16):
                    up = i % 2 == 0
                    candles.append(_candle(
                        uid, session + timedelta(minutes=30 * i),
                        base if up else base + 2, base + 2 if up else base,
                        Decimal(base) - Decimal('0.5'), Decimal(base) + Decimal('2.5'),
                    ))
            store.store(uid, CandleInterval.ONE_MINUTE, candles)


def test_frange_steps_in_decimal():
    assert frange(0.5, 0.8, '0.1') == [0.5, 0.6, 0.7]
    assert frange(1, 1, '0.1') == []


def test_generate_configs_grid_sizes():
    bounds = SweepBounds(stop_loss_min=0.5, stop_loss_max=0.7, days_min=1, days_max=3,
                         min_profit_min=0.2, min_profit_max=0.4, include_math_stat=False)
    assert len(generate_configs(bounds)) == 8

    with_stats = SweepBounds(stop_loss_min=0.5, stop_loss_max=0.7, days_min=1, days_max=3,
                             min_profit_min=0.2, min_profit_max=0.4,
                             percentile_min=3, percentile_max=5, include_math_stat=True)
    configs = generate_configs(with_stats)
    assert len(configs) == 24
    math_stat = [c for c in configs if c.analyse == AnalyseMode.MATH_STAT]
    assert {(c.low_percentile, c.high_percentile) for c in math_stat} == {(3.0, 97.0), (4.0, 96.0)}


def test_sweep_bounds_from_config_section():
    bounds = SweepBounds.from_config({
        'stop_loss_min': 0.5, 'stop_loss_max': 2.0, 'days_min': 1, 'days_max': 5,
        'min_profit_min': 0.2, 'min_profit_max': 0.6, 'commission_pct': 0.05,
        'include_math_stat': False,
    })
    assert bounds.commission == 0.05
    assert not bounds.include_math_stat


def test_trade_day_exits_at_corridor_high():
    corridor = Corridor('uid-a', Price(100, 0), Price(102, 0), 1.0)
    candles = [
        _candle('uid-a', MONDAY, 101, 100, '99.8', 101),
        _candle('uid-a', MONDAY + timedelta(minutes=1), 100, 102, 100, '102.3'),
        _candle('uid-a', MONDAY + timedelta(minutes=2), 102, 101, 101, 102),
    ]
    profit = IntervalBacktestEngine._trade_day(corridor, candles, _sizing('uid-a', lot=10), _config())
    assert profit == Decimal(20)


def test_trade_day_stop_loss_and_commission():
    corridor = Corridor('uid-a', Price(100, 0), Price(110, 0), 1.0)
    candles = [
        _candle('uid-a', MONDAY, 100, 100, 100, 100),
        _candle('uid-a', MONDAY + timedelta(minutes=1), 100, 97, 97, 100),
        _candle('uid-a', MONDAY + timedelta(minutes=2), 97, 97, 97, 97),
    ]
    profit = IntervalBacktestEngine._trade_day(corridor, candles, _sizing('uid-a'), _config(commission=0.1))
    # entry 100, stop at 98, commission on both legs
    assert profit == Decimal(-2) - Decimal('0.1') - Decimal('0.098')


def test_trade_day_closes_at_last_candle():
    corridor = Corridor('uid-a', Price(100, 0), Price(110, 0), 1.0)
    candles = [
        _candle('uid-a', MONDAY, 100, 100, 100, 100),
        _candle('uid-a', MONDAY + timedelta(minutes=1), 100, 101, 100, 101),
    ]
    profit = IntervalBacktestEngine._trade_day(corridor, candles, _sizing('uid-a'), _config())
    assert profit == Decimal(1)


def test_no_entry_on_last_candle():
    corridor = Corridor('uid-a', Price(100, 0), Price(110, 0), 1.0)
    candles = [_candle('uid-a', MONDAY, 100, 100, 100, 100)]
    assert IntervalBacktestEngine._trade_day(corridor, candles, _sizing('uid-a'), _config()) == 0


def test_engine_counts_only_days_with_profit(tmp_path):
    path = tmp_path / 'candles.db'
    _fill_store(path)
    instruments = {'uid-a': _sizing('uid-a'), 'uid-b': _sizing('uid-b')}

    with CandleStore(path) as store:
        engine = IntervalBacktestEngine(store, instruments, top_n=2)
        result = engine.test_config(MONDAY + timedelta(days=2), MONDAY + timedelta(days=7), _config())

    # Wednesday to Friday have history and candles; the weekend has neither
    assert result.trading_days == 3
    assert len(result.days) == 5
    assert result.total_profit > 0


def test_sweep_is_deterministic(tmp_path):
    path = tmp_path / 'candles.db'
    _fill_store(path)
    instruments = {'uid-a': _sizing('uid-a'), 'uid-b': _sizing('uid-b')}
    bounds = SweepBounds(stop_loss_min=1.0, stop_loss_max=1.2, days_min=1, days_max=3,
                         min_profit_min=0.5, min_profit_max=0.7, include_math_stat=False)
    configs = generate_configs(bounds)
    assert len(configs) == 8

    def sweep():
        optimizer = Optimizer(path, instruments, top_n=2, start=MONDAY + timedelta(days=2),
                              stop=MONDAY + timedelta(days=5), workers=4,
                              pool_factory=lambda n: ThreadPoolExecutor(max_workers=n))
        results = asyncio.run(optimizer.run(configs))
        return [(r.config, r.total_profit, r.average_day_percent) for r in results]

    first = sweep()
    second = sweep()
    assert first == second
    assert len(first) == 8
    percents = [p for _, _, p in first]
    assert percents == sorted(percents)


def test_report_written_as_csv(tmp_path):
    path = tmp_path / 'candles.db'
    _fill_store(path)
    instruments = {'uid-a': _sizing('uid-a')}
    engine_results = []
    with CandleStore(path) as store:
        engine = IntervalBacktestEngine(store, instruments, top_n=1)
        for stop_loss in (1.0, 2.0):
            engine_results.append(engine.test_config(MONDAY + timedelta(days=2), MONDAY + timedelta(days=5),
                                                     _config(stop_loss=stop_loss)))

    report = tmp_path / 'reports' / 'backtest.csv'
    write_report(engine_results, report, top=1)

    frame = pd.read_csv(report)
    assert len(frame) == 2
    assert {'analyse', 'stop_loss', 'total_profit', 'average_day_percent', 'trading_days'} <= set(frame.columns)
    assert frame['analyse'].tolist() == ['best_width', 'best_width']


def test_sweep_bounds_require_ranges():
    with pytest.raises(KeyError):
        SweepBounds.from_config({'stop_loss_min': 0.5})


def test_stop_out_fills_at_tick_rounded_loss_price():
    corridor = Corridor('uid-a', Price.from_decimal('100.33'), Price(110, 0), 1.0)
    candles = [
        _candle('uid-a', MONDAY, '100.33', '100.33', '100.33', '100.33'),
        _candle('uid-a', MONDAY + timedelta(minutes=1), '100.33', '98.6', '98.5', '100.33'),
        _candle('uid-a', MONDAY + timedelta(minutes=2), '98.6', '98.6', '98.6', '98.6'),
    ]
    profit = IntervalBacktestEngine._trade_day(corridor, candles, _sizing('uid-a'), _config(stop_loss=1.5))
    # 100.33 less 1.5% is 98.82505, filled at 98.83
    assert profit == Decimal('-1.50')


def test_math_stat_day_trades_narrow_candles(tmp_path):
    path = tmp_path / 'candles.db'
    with CandleStore(path) as store:
        candles = []
        for day in range(3):
            session = MONDAY + timedelta(days=day, hours=7)
            for i in range(10):
                close = 100 if i % 2 == 0 else 102
                candles.append(_candle('uid-a', session + timedelta(minutes=i), close, close,
                                       f"{close - 1}.95", f"{close}.05"))
        store.store('uid-a', CandleInterval.ONE_MINUTE, candles)

    bc = _config(analyse=AnalyseMode.MATH_STAT, low_percentile=5.0, high_percentile=95.0)
    with CandleStore(path) as store:
        engine = IntervalBacktestEngine(store, {'uid-a': _sizing('uid-a')}, top_n=1)
        [corridor] = engine.select(MONDAY + timedelta(days=2), bc)
        result = engine.run_day(MONDAY + timedelta(days=2), bc)

    assert corridor.score == 0.0
    assert (corridor.low, corridor.high) == (Price(100, 0), Price(102, 0))
    # five round trips from 100 to 102
    assert result.profit == Decimal(10)
    assert result.instruments == 1
