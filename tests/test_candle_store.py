import sys
sys.path.insert(0, '.')

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ingest.candle_store import CandleStore, StoreCorruption
from market.models import Candle, CandleInterval
from market.price import Price

T1 = datetime(2023, 5, 10, 10, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)


def _candle(at, price=100, uid='X', complete=True):
    return Candle(
        instrument_uid=uid,
        interval=CandleInterval.ONE_MINUTE,
        time=at,
        open=Price(price, 0),
        close=Price(price, 0),
        high=Price(price + 1, 0),
        low=Price(price - 1, 0),
        volume=10,
        is_complete=complete,
    )


def _source(candles, calls=None):
    async def fetch(instrument_id, interval, start, end):
        if calls is not None:
            calls.append((start, end))
        return candles
    return fetch


def test_gap_fill_and_watermark(tmp_path):
    store = CandleStore(tmp_path / 'candles.db')
    calls = []
    first = [_candle(T1 - 3 * MINUTE), _candle(T1 - 2 * MINUTE), _candle(T1 - MINUTE)]
    second = [_candle(T1 - MINUTE), _candle(T1), _candle(T1 + MINUTE)]

    asyncio.run(store.update('X', CandleInterval.ONE_MINUTE, T1, _source(first, calls)))
    assert store.watermark('X', CandleInterval.ONE_MINUTE) == T1
    asyncio.run(store.update('X', CandleInterval.ONE_MINUTE, T1 + 2 * MINUTE, _source(second, calls)))

    loaded = store.load('X', CandleInterval.ONE_MINUTE, T1 - 5 * MINUTE, T1 + 5 * MINUTE)
    assert [c.time for c in loaded] == [T1 - 3 * MINUTE, T1 - 2 * MINUTE, T1 - MINUTE, T1, T1 + MINUTE]
    assert store.watermark('X', CandleInterval.ONE_MINUTE) == T1 + 2 * MINUTE
    # the second fetch resumes from the first watermark
    assert calls[1] == (T1, T1 + 2 * MINUTE)
    store.close()


def test_load_is_half_open_and_ordered(tmp_path):
    with CandleStore(tmp_path / 'candles.db') as store:
        candles = [_candle(T1 + i * MINUTE, price=100 + i) for i in (3, 0, 2, 1)]
        store.store('X', CandleInterval.ONE_MINUTE, candles)
        loaded = store.load('X', CandleInterval.ONE_MINUTE, T1 + MINUTE, T1 + 3 * MINUTE)
        assert [c.time for c in loaded] == [T1 + MINUTE, T1 + 2 * MINUTE]
        assert loaded[0].close == Price(101, 0)
        assert store.instruments() == ['X']


def test_failed_update_keeps_watermark(tmp_path):
    store = CandleStore(tmp_path / 'candles.db')
    asyncio.run(store.update('X', CandleInterval.ONE_MINUTE, T1, _source([_candle(T1 - MINUTE)])))

    async def broken(instrument_id, interval, start, end):
        raise ConnectionError('gateway down')

    with pytest.raises(ConnectionError):
        asyncio.run(store.update('X', CandleInterval.ONE_MINUTE, T1 + MINUTE, broken))
    assert store.watermark('X', CandleInterval.ONE_MINUTE) == T1
    assert len(store.load('X', CandleInterval.ONE_MINUTE, T1 - MINUTE, T1 + MINUTE)) == 1
    store.close()


def test_complete_candle_not_overwritten_by_partial(tmp_path):
    with CandleStore(tmp_path / 'candles.db') as store:
        store.store('X', CandleInterval.ONE_MINUTE, [_candle(T1, price=100)])
        store.store('X', CandleInterval.ONE_MINUTE, [_candle(T1, price=200, complete=False)])
        loaded = store.load('X', CandleInterval.ONE_MINUTE, T1, T1 + MINUTE)
        assert loaded[0].close == Price(100, 0)
        assert loaded[0].is_complete


def test_corrupt_row_reports_consistent_prefix(tmp_path):
    with CandleStore(tmp_path / 'candles.db') as store:
        bad = _candle(T1 + MINUTE)
        bad.low = Price(500, 0)
        store.store('X', CandleInterval.ONE_MINUTE, [_candle(T1), bad, _candle(T1 + 2 * MINUTE)])
        with pytest.raises(StoreCorruption) as info:
            store.load('X', CandleInterval.ONE_MINUTE, T1, T1 + 5 * MINUTE)
        assert [c.time for c in info.value.candles] == [T1]


def test_watermark_unknown_instrument(tmp_path):
    with CandleStore(tmp_path / 'candles.db') as store:
        assert store.watermark('missing', CandleInterval.ONE_MINUTE) is None
        assert store.load('missing', CandleInterval.ONE_MINUTE, T1, T1 + MINUTE) == []
