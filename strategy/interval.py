import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterable, Callable, Dict, List, Optional

from analytics.corridor import Corridor, CorridorAnalyzer, time_interval_by_days
from ingest.candle_store import CandleSource, CandleStore, StoreCorruption
from ingest.invest_rest import BusinessError, TransportUnavailable
from market.models import Candle, CandleInterval
from market.price import Price, ZERO
from strategy.executor import Executor


logger = logging.getLogger(__name__)


class IntervalStrategy:
    """Range trading: buy at the corridor low, sell at the corridor high."""

    def __init__(self, executor: Executor, store: CandleStore, analyzer: CorridorAnalyzer,
                 days_to_calculate: int = 3, top_n: int = 10,
                 candle_source: Optional[CandleSource] = None,
                 interval: CandleInterval = CandleInterval.ONE_MINUTE,
                 clock: Optional[Callable[[], datetime]] = None):
        self.executor = executor
        self.store = store
        self.analyzer = analyzer
        self.days_to_calculate = int(days_to_calculate)
        self.top_n = int(top_n)
        self.candle_source = candle_source
        self.interval = CandleInterval(interval)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.corridors: Dict[str, Corridor] = {}
        self.total_profit: Price = ZERO

    @property
    def selected(self) -> List[str]:
        return list(self.corridors)

    async def update_intervals(self, rank: bool = True) -> Dict[str, Corridor]:
        """Recompute corridors; ``rank`` reselects the top instruments, otherwise the selection is kept.

        On a refresh a selected instrument whose new corridor is rejected keeps its previous one.
        """
        now = self._clock()
        start, _ = time_interval_by_days(self.days_to_calculate, now)
        refresh = not rank and bool(self.corridors)
        candidates = self.selected if refresh else list(self.executor.positions)
        corridors = []
        for uid in candidates:
            if self.candle_source is not None:
                await self.store.update(uid, self.interval, now, self.candle_source)
            candles = self.store.load(uid, self.interval, start, now)
            corridor = self.analyzer.analyse(self.executor.positions[uid].instrument, candles)
            logger.debug("%s corridor %s..%s score %.3f over %s candles",
                         uid, corridor.low, corridor.high, corridor.score, len(candles))
            if refresh and not corridor.is_tradable:
                logger.warning("%s refreshed corridor rejected, keeping %s..%s",
                               uid, self.corridors[uid].low, self.corridors[uid].high)
                corridor = self.corridors[uid]
            corridors.append(corridor)
        if rank:
            corridors = self.analyzer.rank(corridors, self.top_n)
        self.corridors = {c.instrument_uid: c for c in corridors if c.is_tradable}
        for uid, corridor in self.corridors.items():
            logger.info("Trading %s between %s and %s", uid, corridor.low, corridor.high)
        return self.corridors

    def required_money(self) -> Price:
        """Cash needed to open every selected position at its corridor low."""
        total = ZERO
        for uid, corridor in self.corridors.items():
            position = self.executor.positions[uid]
            total = total + corridor.low * (position.lot * position.quantity)
        return total

    async def on_candle(self, candle: Candle) -> Optional[Price]:
        uid = candle.instrument_uid
        corridor = self.corridors.get(uid)
        position = self.executor.positions.get(uid)
        if corridor is None and (position is None or not position.in_stock):
            return None
        self.executor.last_price_update(uid, candle.close)
        if not position.in_stock:
            if candle.close <= corridor.low:
                await self.executor.buy(uid)
            return None
        stopped = self.executor.risk.stop_loss_triggered(
            position.entry_price, candle.close, position.stop_loss_percent)
        # a held instrument that lost its corridor can still be stopped out
        take = corridor is not None and candle.close >= corridor.high
        if take or stopped:
            realized = await self.executor.sell(uid)
            if realized is not None:
                self.total_profit = self.total_profit + realized
            return realized
        return None

    async def run(self, candles: AsyncIterable[Candle]) -> Price:
        async for candle in candles:
            await self.on_candle(candle)
        return self.total_profit

    async def refresh_periodically(self, delay_s: float, sleep=asyncio.sleep) -> None:
        while True:
            await sleep(delay_s)
            try:
                await self.update_intervals(rank=False)
            except (BusinessError, TransportUnavailable, StoreCorruption) as exc:
                logger.error("Corridor refresh failed: %s", exc)
