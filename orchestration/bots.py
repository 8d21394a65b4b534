import asyncio
import logging
from decimal import ROUND_CEILING
from typing import Callable, List, Optional, Sequence

from analytics.corridor import CorridorAnalyzer
from config import ClientConfig
from ingest.candle_store import CandleStore
from ingest.invest_rest import InvestAPIError, describe_error
from ingest.md_stream import MarketDataStream
from market.models import CandleInterval
from market.price import Price, ZERO
from monitoring.async_utils import ReceiverClosed, cancel_and_wait, run_tasks_with_cleanup
from orchestration.session_timer import SessionEvent, SessionTimer
from risk.position_sizer import RiskManager
from strategy.executor import Executor
from strategy.interval import IntervalStrategy
from strategy.orderbook_imbalance import OrderBookImbalanceStrategy
from strategy.transports.invest import InvestTransport


logger = logging.getLogger(__name__)

StreamFactory = Callable[[], MarketDataStream]


class InsufficientFunds(Exception):
    """Account money is below what the bot needs and cannot be topped up."""


class SessionBot:
    """Drives a strategy between session START and STOP events and flattens on the way out."""

    name = 'bot'

    def __init__(self, client_config: ClientConfig, transport: InvestTransport, timer: SessionTimer,
                 stream_factory: StreamFactory, instrument_ids: Sequence[str], sell_out: bool = True,
                 currency: str = 'rub', risk: Optional[RiskManager] = None):
        self.client_config = client_config
        self.transport = transport
        self.timer = timer
        self.stream_factory = stream_factory
        self.instrument_ids = list(instrument_ids)
        self.sell_out = sell_out
        self.currency = currency.lower()
        self.risk = risk or RiskManager()
        self.executor: Optional[Executor] = None
        self.stream: Optional[MarketDataStream] = None
        self._session_task: Optional[asyncio.Task] = None

    # Lifecycle hooks ----------------------------------------------------
    async def prepare(self) -> None:
        instruments = await self.transport.instruments_by_uid(self.instrument_ids)
        last_prices = await self.transport.last_prices(self.instrument_ids)
        self.executor = Executor(self.transport, instruments, last_prices, self.risk)
        await self.executor.refresh_positions()

    def trading_ids(self) -> List[str]:
        return self.executor.instrument_ids

    async def subscribe(self, stream: MarketDataStream) -> None:
        raise NotImplementedError

    def strategy_coroutines(self, stream: MarketDataStream) -> list:
        raise NotImplementedError

    def report(self) -> None:
        logger.info("%s realized %s", self.name, self.executor.realized_total if self.executor else ZERO)

    # Money --------------------------------------------------------------
    async def check_money_balance(self, required: Price) -> Price:
        """Make sure ``required`` is available; a sandbox account is topped up with the shortfall."""
        snapshot = await self.transport.positions()
        available = snapshot.available(self.currency)
        logger.info("Money balance %s %s, required %s", available, self.currency, required)
        shortfall = required - available
        if shortfall <= ZERO:
            return available
        if not self.client_config.is_sandbox:
            raise InsufficientFunds(
                f"not enough money on balance: {available} {self.currency}, required {required}"
            )
        amount = Price.from_decimal(shortfall.to_decimal().to_integral_value(rounding=ROUND_CEILING))
        balance = await self.transport.sandbox_pay_in(self.currency, amount)
        logger.info("Sandbox pay in %s %s, balance %s", amount, self.currency, balance)
        if self.executor is not None:
            await self.executor.refresh_positions()
        return balance

    # Supervision --------------------------------------------------------
    async def run(self) -> None:
        await self.prepare()
        timer_task = asyncio.create_task(self.timer.run(), name=f'{self.name}-timer')
        try:
            await self._supervise()
            await timer_task
        finally:
            await cancel_and_wait(timer_task)
            await self.stop_session()
            self.report()

    async def _supervise(self) -> None:
        getter: Optional[asyncio.Future] = None
        try:
            while True:
                if getter is None:
                    getter = asyncio.ensure_future(self.timer.events.get())
                waiting = {getter}
                if self._session_task is not None:
                    waiting.add(self._session_task)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                session = self._session_task
                if session is not None and session in done:
                    self._session_task = None
                    if session.exception() is not None:
                        logger.error("%s session failed: %s", self.name, session.exception())
                        raise session.exception()
                if getter not in done:
                    continue
                finished, getter = getter, None
                try:
                    event = finished.result()
                except ReceiverClosed:
                    return
                if event == SessionEvent.START:
                    await self.start_session()
                else:
                    await self.stop_session()
        finally:
            if getter is not None:
                getter.cancel()

    async def start_session(self) -> None:
        if self._session_task is not None:
            return
        ids = self.trading_ids()
        if not ids:
            logger.warning("%s has no instruments to trade this session", self.name)
            return
        stream = self.stream_factory()
        self.stream = stream
        await stream.subscribe_last_price(ids)
        await self.subscribe(stream)
        tasks = [
            asyncio.create_task(stream.listen(), name=f'{self.name}-stream'),
            asyncio.create_task(self.executor.watch_last_prices(stream.last_prices), name=f'{self.name}-prices'),
        ]
        tasks.extend(asyncio.create_task(coro) for coro in self.strategy_coroutines(stream))
        self._session_task = asyncio.create_task(run_tasks_with_cleanup(tasks), name=f'{self.name}-session')
        logger.info("%s session started with %s instruments", self.name, len(ids))

    async def stop_session(self) -> None:
        stream, self.stream = self.stream, None
        session, self._session_task = self._session_task, None
        if stream is not None:
            await stream.stop()
        await cancel_and_wait(session)
        if self.sell_out and self.executor is not None:
            try:
                await self.executor.sell_out()
            except InvestAPIError as exc:
                logger.error("%s sell out failed: %s", self.name, describe_error(exc))


class OrderBookBot(SessionBot):
    name = 'orderbook-bot'

    def __init__(self, *args, depth: int = 20, buy_ratio: float = 2.0, sell_ratio: float = 2.0,
                 required_money: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.depth = int(depth)
        self.buy_ratio = buy_ratio
        self.sell_ratio = sell_ratio
        self.required_money = Price.from_decimal(required_money)
        self.strategy: Optional[OrderBookImbalanceStrategy] = None

    async def prepare(self) -> None:
        await super().prepare()
        self.strategy = OrderBookImbalanceStrategy(self.executor, self.buy_ratio, self.sell_ratio)
        await self.check_money_balance(self.required_money)

    async def subscribe(self, stream: MarketDataStream) -> None:
        await stream.subscribe_order_book(self.trading_ids(), self.depth)

    def strategy_coroutines(self, stream: MarketDataStream) -> list:
        return [self.strategy.run(stream.order_books)]


class IntervalBot(SessionBot):
    name = 'interval-bot'

    def __init__(self, *args, store: CandleStore, analyzer: CorridorAnalyzer,
                 days_to_calculate: int = 3, top_n: int = 10, update_delay_s: float = 3600.0,
                 **kwargs):
        super().__init__(*args, **kwargs)
        self.store = store
        self.analyzer = analyzer
        self.days_to_calculate = days_to_calculate
        self.top_n = top_n
        self.update_delay_s = float(update_delay_s)
        self.strategy: Optional[IntervalStrategy] = None

    async def prepare(self) -> None:
        await super().prepare()
        self.strategy = IntervalStrategy(
            self.executor, self.store, self.analyzer,
            days_to_calculate=self.days_to_calculate, top_n=self.top_n,
            candle_source=self.transport.get_candles,
        )
        await self.strategy.update_intervals()
        await self.check_money_balance(self.strategy.required_money())

    def trading_ids(self) -> List[str]:
        return self.strategy.selected

    async def subscribe(self, stream: MarketDataStream) -> None:
        await stream.subscribe_candles(self.trading_ids(), CandleInterval.ONE_MINUTE)

    def strategy_coroutines(self, stream: MarketDataStream) -> list:
        return [
            self.strategy.run(stream.candles),
            self.strategy.refresh_periodically(self.update_delay_s),
        ]
