"""Durable per-(instrument, interval) candle history in a local SQLite file."""
import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import InvalidOperation
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from market.models import Candle, CandleInterval
from market.price import parse_price


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

CandleSource = Callable[[str, CandleInterval, datetime, datetime], Awaitable[Iterable[Candle]]]

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS candles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instrument_uid TEXT NOT NULL,
        interval TEXT NOT NULL,
        open TEXT NOT NULL,
        close TEXT NOT NULL,
        high TEXT NOT NULL,
        low TEXT NOT NULL,
        volume INTEGER NOT NULL,
        time INTEGER NOT NULL,
        is_complete INTEGER NOT NULL,
        UNIQUE (instrument_uid, interval, time)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_candles_uid_time ON candles(instrument_uid, time);",
    """
    CREATE TABLE IF NOT EXISTS updates (
        instrument_id TEXT NOT NULL,
        interval TEXT NOT NULL,
        time INTEGER NOT NULL,
        PRIMARY KEY (instrument_id, interval)
    );
    """,
)

UPSERT_CANDLE = """
    INSERT INTO candles (instrument_uid, interval, open, close, high, low, volume, time, is_complete)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (instrument_uid, interval, time) DO UPDATE SET
        open = excluded.open,
        close = excluded.close,
        high = excluded.high,
        low = excluded.low,
        volume = excluded.volume,
        is_complete = excluded.is_complete
    WHERE candles.is_complete = 0 OR excluded.is_complete = 1
"""

UPSERT_WATERMARK = """
    INSERT INTO updates (instrument_id, interval, time) VALUES (?, ?, ?)
    ON CONFLICT (instrument_id, interval) DO UPDATE SET time = excluded.time
"""


class StoreCorruption(Exception):
    """A persisted row violates the candle invariant; ``candles`` holds the rows read before it."""

    def __init__(self, message: str, candles: Optional[List[Candle]] = None):
        super().__init__(message)
        self.candles = candles or []


def _to_seconds(value: datetime) -> int:
    return (_aware(value) - EPOCH) // timedelta(seconds=1)


def _to_micros(value: datetime) -> int:
    return (_aware(value) - EPOCH) // timedelta(microseconds=1)


def _from_seconds(value: int) -> datetime:
    return EPOCH + timedelta(seconds=value)


def _from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CandleStore:
    def __init__(self, path: Union[str, Path], history_from: Optional[datetime] = None):
        self.path = Path(path)
        if str(path) != ':memory:':
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.history_from = history_from
        self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False)
        if str(path) != ':memory:':
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    @classmethod
    def open(cls, path: Union[str, Path], history_from: Optional[datetime] = None) -> 'CandleStore':
        return cls(path, history_from=history_from)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> 'CandleStore':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        for statement in SCHEMA:
            self._conn.execute(statement)

    # Reads ----------------------------------------------------------------
    def load(self, instrument_id: str, interval: CandleInterval,
             start: datetime, end: datetime) -> List[Candle]:
        """Candles with time in [start, end), ascending."""
        interval = CandleInterval(interval)
        rows = self._conn.execute(
            """
            SELECT open, close, high, low, volume, time, is_complete FROM candles
            WHERE instrument_uid = ? AND interval = ? AND time >= ? AND time < ?
            ORDER BY time ASC
            """,
            (instrument_id, interval.value, _to_seconds(start), _to_seconds(end)),
        ).fetchall()

        candles: List[Candle] = []
        for open_, close, high, low, volume, ts, complete in rows:
            try:
                candle = Candle(
                    instrument_uid=instrument_id,
                    interval=interval,
                    time=_from_seconds(ts),
                    open=parse_price(open_),
                    close=parse_price(close),
                    high=parse_price(high),
                    low=parse_price(low),
                    volume=int(volume),
                    is_complete=bool(complete),
                )
            except (InvalidOperation, ValueError, TypeError) as exc:
                raise StoreCorruption(
                    f"{instrument_id} unreadable candle at {ts}: {exc}", candles
                ) from exc
            if not candle.is_consistent():
                raise StoreCorruption(
                    f"{instrument_id} candle at {candle.time.isoformat()} violates low <= open,close <= high",
                    candles,
                )
            candles.append(candle)
        logger.debug("%s %s candles loaded from storage", instrument_id, len(candles))
        return candles

    def watermark(self, instrument_id: str, interval: CandleInterval) -> Optional[datetime]:
        row = self._conn.execute(
            "SELECT time FROM updates WHERE instrument_id = ? AND interval = ?",
            (instrument_id, CandleInterval(interval).value),
        ).fetchone()
        if row is None:
            return None
        return _from_micros(row[0])

    def instruments(self) -> List[str]:
        rows = self._conn.execute("SELECT DISTINCT instrument_uid FROM candles ORDER BY instrument_uid").fetchall()
        return [row[0] for row in rows]

    # Writes ---------------------------------------------------------------
    async def update(self, instrument_id: str, interval: CandleInterval, now: datetime,
                     source: CandleSource, since: Optional[datetime] = None) -> int:
        """Fetch candles from the watermark up to ``now`` and persist them with the new watermark."""
        interval = CandleInterval(interval)
        lock = self._locks.setdefault((instrument_id, interval.value), asyncio.Lock())
        async with lock:
            start = self.watermark(instrument_id, interval) or since or self.history_from
            if start is None:
                start = now - timedelta(days=1)
            candles = list(await source(instrument_id, interval, start, now))
            self.store(instrument_id, interval, candles, watermark=now)
        logger.info("%s %s candles uploaded in storage", instrument_id, len(candles))
        return len(candles)

    def store(self, instrument_id: str, interval: CandleInterval, candles: Iterable[Candle],
              watermark: Optional[datetime] = None) -> None:
        """Upsert candles and optionally move the watermark, all in one transaction."""
        interval = CandleInterval(interval)
        rows = [
            (
                instrument_id,
                interval.value,
                str(c.open),
                str(c.close),
                str(c.high),
                str(c.low),
                int(c.volume),
                _to_seconds(c.time),
                1 if c.is_complete else 0,
            )
            for c in candles
        ]
        cur = self._conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            if rows:
                cur.executemany(UPSERT_CANDLE, rows)
            if watermark is not None:
                cur.execute(UPSERT_WATERMARK, (instrument_id, interval.value, _to_micros(watermark)))
        except BaseException:
            cur.execute("ROLLBACK")
            raise
        cur.execute("COMMIT")
