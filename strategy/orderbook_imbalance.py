import logging
from typing import AsyncIterable, Optional

from market.models import OrderBook
from market.price import Price, ZERO
from strategy.execution_types import OrderDirection
from strategy.executor import Executor


logger = logging.getLogger(__name__)


class OrderBookImbalanceStrategy:
    """Buys when bids outweigh asks by ``buy_ratio`` and sells on the mirror condition."""

    def __init__(self, executor: Executor, buy_ratio: float = 2.0, sell_ratio: float = 2.0):
        self.executor = executor
        self.buy_ratio = float(buy_ratio)
        self.sell_ratio = float(sell_ratio)
        self.total_profit: Price = ZERO
        self.dropped = 0

    def decide(self, book: OrderBook) -> Optional[OrderDirection]:
        if not book.is_consistent:
            self.dropped += 1
            return None
        bid_count = sum(level.quantity for level in book.bids)
        ask_count = sum(level.quantity for level in book.asks)
        if bid_count == 0 and ask_count == 0:
            return None
        if ask_count == 0:
            return OrderDirection.BUY
        if bid_count == 0:
            return OrderDirection.SELL
        ratio = bid_count / ask_count
        if ratio > self.buy_ratio:
            return OrderDirection.BUY
        if 1 / ratio > self.sell_ratio:
            return OrderDirection.SELL
        return None

    async def on_order_book(self, book: OrderBook) -> Optional[Price]:
        instrument_id = book.instrument_uid or book.figi
        direction = self.decide(book)
        if direction == OrderDirection.BUY:
            await self.executor.buy(instrument_id)
        elif direction == OrderDirection.SELL:
            realized = await self.executor.sell(instrument_id)
            if realized is not None:
                self.total_profit = self.total_profit + realized
                return realized
        return None

    async def run(self, order_books: AsyncIterable[OrderBook]) -> Price:
        """Consume snapshots until the receiver closes; returns realized profit."""
        async for book in order_books:
            await self.on_order_book(book)
        logger.info("Order book strategy finished, profit %s, dropped %s snapshots",
                    self.total_profit, self.dropped)
        return self.total_profit
