import logging
import threading
import time
from typing import AsyncIterable, Dict, Optional

from api.metrics import metrics
from ingest.invest_rest import BusinessError, describe_error
from market.models import Instrument, LastPrice, Position, PositionsSnapshot
from market.price import Price, ZERO
from risk.position_sizer import RiskManager
from strategy.execution_types import OrderDirection, OrderReport
from strategy.transports.invest import InvestTransport


logger = logging.getLogger(__name__)


class LastPrices:
    """Last traded price per instrument, written by the stream consumer and read by the executor."""

    def __init__(self, initial: Optional[Dict[str, Price]] = None):
        self._lock = threading.Lock()
        self._prices: Dict[str, Price] = dict(initial or {})

    def update(self, instrument_id: str, price: Price) -> None:
        with self._lock:
            self._prices[instrument_id] = price

    def get(self, instrument_id: str) -> Optional[Price]:
        with self._lock:
            return self._prices.get(instrument_id)


class Executor:
    """Sole submitter of orders: owns per-instrument position state, sizing and exit rules."""

    def __init__(self, transport: InvestTransport, instruments: Dict[str, Instrument],
                 last_prices: Dict[str, Price], risk: Optional[RiskManager] = None):
        self.transport = transport
        self.risk = risk or RiskManager()
        self.last_prices = LastPrices(last_prices)
        self.positions: Dict[str, Position] = {}
        for uid, decision in self.risk.size_all(instruments, last_prices).items():
            self.positions[uid] = Position(
                instrument=decision.instrument,
                quantity=decision.quantity,
                stop_loss_percent=self.risk.stop_loss_pct,
            )
            logger.info(
                "%s sized to %s lots (lot %s, notional %s)",
                decision.instrument.ticker or uid, decision.quantity, decision.instrument.lot, decision.notional,
            )
        self.account = PositionsSnapshot()
        self.realized: Dict[str, Price] = {}
        self.realized_total: Price = ZERO

    @property
    def instrument_ids(self):
        return list(self.positions)

    def in_stock(self, instrument_id: str) -> bool:
        position = self.positions.get(instrument_id)
        return bool(position and position.in_stock)

    # Market state -------------------------------------------------------
    def last_price_update(self, instrument_id: str, price: Price) -> None:
        self.last_prices.update(instrument_id, price)

    async def watch_last_prices(self, receiver: AsyncIterable[LastPrice]) -> None:
        async for last_price in receiver:
            self.last_price_update(last_price.instrument_uid or last_price.figi, last_price.price)

    async def refresh_positions(self) -> PositionsSnapshot:
        self.account = await self.transport.positions()
        return self.account

    def possible_to_buy(self, position: Position, last_price: Price) -> bool:
        required = last_price * (position.quantity * position.lot)
        available = self.account.available(position.currency)
        if available < required:
            logger.info(
                "%s not enough money to buy: required %s %s, available %s",
                position.instrument.ticker or position.instrument.uid, required, position.currency, available,
            )
            return False
        return True

    # Orders -------------------------------------------------------------
    async def buy(self, instrument_id: str) -> Optional[OrderReport]:
        position = self.positions.get(instrument_id)
        if position is None or position.in_stock:
            return None
        last_price = self.last_prices.get(instrument_id)
        if last_price is None:
            logger.debug("%s has no last price yet; buy skipped", instrument_id)
            return None
        if not self.possible_to_buy(position, last_price):
            return None

        report = await self._submit(instrument_id, OrderDirection.BUY, position.quantity)
        if report is None or not report.filled:
            return report
        position.in_stock = True
        position.entry_price = report.executed_price or last_price
        logger.info("Buy %s x%s at %s", position.instrument.ticker or instrument_id,
                    position.quantity, position.entry_price)
        await self._after_fill()
        return report

    async def sell(self, instrument_id: str) -> Optional[Price]:
        """Close the position when profitable or stopped out; returns executed minus entry price."""
        position = self.positions.get(instrument_id)
        if position is None or not position.in_stock:
            return None
        last_price = self.last_prices.get(instrument_id)
        if last_price is None:
            return None
        profitable = self.risk.is_profitable(position.entry_price, last_price)
        stopped = self.risk.stop_loss_triggered(position.entry_price, last_price, position.stop_loss_percent)
        if not (profitable or stopped):
            return None

        report = await self._submit(instrument_id, OrderDirection.SELL, position.quantity)
        if report is None or not report.filled:
            return None
        exit_price = report.executed_price or last_price
        realized = exit_price - position.entry_price
        position.in_stock = False
        self.realized[instrument_id] = self.realized.get(instrument_id, ZERO) + realized
        self.realized_total = self.realized_total + realized
        metrics.record_pnl(self.realized_total.to_float())
        logger.info(
            "Sell %s x%s at %s (%s), realized %s",
            position.instrument.ticker or instrument_id, position.quantity, exit_price,
            'stop-loss' if stopped and not profitable else 'profit', realized,
        )
        await self._after_fill()
        return realized

    async def sell_out(self) -> None:
        """Flatten every held security this executor trades, by signed balance in lots."""
        await self._cancel_active_orders()
        snapshot = await self.transport.positions()
        for security in snapshot.securities:
            position = self.positions.get(security.instrument_uid)
            if position is None:
                logger.info("%s not found in executor instruments; left as is", security.instrument_uid)
                continue
            # exact integer lots, sign applied after
            lots = abs(int(security.balance)) // int(position.lot)
            if security.balance < 0:
                lots = -lots
            if lots == 0:
                continue
            direction = OrderDirection.SELL if lots > 0 else OrderDirection.BUY
            report = await self._submit(security.instrument_uid, direction, abs(lots))
            if report is not None and report.filled:
                position.in_stock = False
        await self._after_fill()

    async def _cancel_active_orders(self) -> None:
        orders = await self.transport.active_orders()
        for order in orders:
            if order.instrument_uid not in self.positions:
                continue
            try:
                await self.transport.cancel_order(order.order_id)
            except BusinessError as exc:
                logger.warning("Cancel %s failed: %s", order.order_id, describe_error(exc))

    async def _submit(self, instrument_id: str, direction: OrderDirection,
                      quantity: int) -> Optional[OrderReport]:
        started = time.monotonic()
        metrics.record_order_placed(direction.name.lower())
        try:
            report = await self.transport.post_market_order(instrument_id, quantity, direction)
        except BusinessError as exc:
            self._log_order_error(instrument_id, direction, exc)
            return None
        metrics.record_order_send_latency(time.monotonic() - started)
        if report.filled:
            metrics.record_order_filled(direction.name.lower())
        else:
            logger.warning(
                "%s %s order %s not filled: %s %s",
                direction.name, instrument_id, report.order_id, report.status.value, report.message,
            )
            metrics.record_order_rejected()
        return report

    async def _after_fill(self) -> None:
        metrics.update_open_positions(sum(1 for p in self.positions.values() if p.in_stock))
        await self.refresh_positions()

    def _log_order_error(self, instrument_id: str, direction: OrderDirection, error: Exception) -> None:
        metrics.record_order_rejected()
        logger.error("%s order for %s rejected: %s", direction.name, instrument_id, describe_error(error))
