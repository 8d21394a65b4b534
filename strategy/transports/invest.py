import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ingest.invest_rest import InvestAPIError, InvestRESTClient
from market.models import (
    Candle,
    CandleInterval,
    Instrument,
    LastPrice,
    OrderBook,
    PositionsSnapshot,
    TradingDay,
    format_time,
)
from market.price import Price
from strategy.execution_types import ExecutionStatus, OrderDirection, OrderReport, OrderType


__all__ = ["InvestTransport", "InvestAPIError", "MAX_CANDLE_WINDOW"]

logger = logging.getLogger(__name__)

# widest range one GetCandles call accepts per interval
MAX_CANDLE_WINDOW = {
    CandleInterval.ONE_MINUTE: timedelta(days=1),
    CandleInterval.FIVE_MINUTES: timedelta(days=1),
    CandleInterval.FIFTEEN_MINUTES: timedelta(days=1),
    CandleInterval.HOUR: timedelta(days=7),
    CandleInterval.DAY: timedelta(days=365),
}


class InvestTransport:
    """Typed adapter over the gateway client for the unary calls the bots use."""

    def __init__(self, rest: InvestRESTClient, account_id: Optional[str] = None) -> None:
        self.rest = rest
        self.account_id = account_id if account_id is not None else rest.config.account_id

    # Reference data -----------------------------------------------------
    async def instrument_by_uid(self, uid: str) -> Instrument:
        data = await self.rest.call(
            "InstrumentsService", "GetInstrumentBy",
            {"idType": "INSTRUMENT_ID_TYPE_UID", "id": uid},
        )
        return Instrument.from_payload(data.get("instrument") or {})

    async def instruments_by_uid(self, uids: Iterable[str]) -> Dict[str, Instrument]:
        result = {}
        for uid in uids:
            result[uid] = await self.instrument_by_uid(uid)
        return result

    async def shares(self, exchange: Optional[str] = None) -> List[Instrument]:
        data = await self.rest.call(
            "InstrumentsService", "Shares", {"instrumentStatus": "INSTRUMENT_STATUS_BASE"},
        )
        shares = [Instrument.from_payload(item) for item in data.get("instruments") or []]
        if exchange:
            shares = [s for s in shares if s.exchange.lower() == exchange.lower()]
        return shares

    async def trading_schedules(self, exchange: str, start: datetime, end: datetime) -> List[TradingDay]:
        data = await self.rest.call(
            "InstrumentsService", "TradingSchedules",
            {"exchange": exchange, "from": format_time(start), "to": format_time(end)},
        )
        days: List[TradingDay] = []
        for schedule in data.get("exchanges") or []:
            name = schedule.get("exchange") or ""
            if name.lower() != exchange.lower():
                continue
            days.extend(TradingDay.from_payload(name, day) for day in schedule.get("days") or [])
        days.sort(key=lambda d: d.date)
        return days

    # Market data --------------------------------------------------------
    async def get_candles(self, instrument_id: str, interval: CandleInterval,
                          start: datetime, end: datetime) -> List[Candle]:
        """Historic candles in [start, end), split into windows the API accepts."""
        interval = CandleInterval(interval)
        window = MAX_CANDLE_WINDOW[interval]
        candles: List[Candle] = []
        cursor = start
        while cursor < end:
            chunk_end = min(cursor + window, end)
            data = await self.rest.call(
                "MarketDataService", "GetCandles",
                {
                    "instrumentId": instrument_id,
                    "from": format_time(cursor),
                    "to": format_time(chunk_end),
                    "interval": interval.value,
                },
            )
            candles.extend(
                Candle.from_payload(item, instrument_uid=instrument_id, interval=interval)
                for item in data.get("candles") or []
            )
            cursor = chunk_end
        return candles

    async def last_prices(self, ids: Iterable[str]) -> Dict[str, Price]:
        ids = list(ids)
        if not ids:
            return {}
        data = await self.rest.call("MarketDataService", "GetLastPrices", {"instrumentId": ids})
        prices = {}
        for item in data.get("lastPrices") or []:
            lp = LastPrice.from_payload(item)
            prices[lp.instrument_uid or lp.figi] = lp.price
        return prices

    async def order_book(self, instrument_id: str, depth: int) -> OrderBook:
        data = await self.rest.call(
            "MarketDataService", "GetOrderBook", {"instrumentId": instrument_id, "depth": depth},
        )
        return OrderBook.from_payload(data)

    # Account ------------------------------------------------------------
    async def positions(self) -> PositionsSnapshot:
        data = await self.rest.call("OperationsService", "GetPositions", {"accountId": self.account_id})
        return PositionsSnapshot.from_payload(data)

    async def sandbox_pay_in(self, currency: str, amount: Price) -> Price:
        payload = {"accountId": self.account_id, "amount": {"currency": currency, **amount.to_quotation()}}
        data = await self.rest.call("SandboxService", "SandboxPayIn", payload, idempotent=False)
        return Price.from_quotation(data.get("balance"))

    # Orders -------------------------------------------------------------
    async def post_market_order(self, instrument_id: str, quantity: int,
                                direction: OrderDirection) -> OrderReport:
        order_id = str(uuid.uuid4())
        payload = {
            "instrumentId": instrument_id,
            "quantity": str(quantity),
            "direction": direction.value,
            "accountId": self.account_id,
            "orderType": OrderType.MARKET.value,
            "orderId": order_id,
        }
        data = await self.rest.call("OrdersService", "PostOrder", payload, idempotent=False)
        return self._parse_order(data, instrument_id, direction, order_id)

    async def cancel_order(self, order_id: str) -> None:
        await self.rest.call(
            "OrdersService", "CancelOrder",
            {"accountId": self.account_id, "orderId": order_id},
            idempotent=False,
        )

    async def active_orders(self) -> List[OrderReport]:
        data = await self.rest.call("OrdersService", "GetOrders", {"accountId": self.account_id})
        return [self._parse_order(item) for item in data.get("orders") or []]

    async def close(self) -> None:
        await self.rest.close()

    def _parse_order(self, payload: Dict[str, Any], instrument_id: str = "",
                     direction: Optional[OrderDirection] = None,
                     client_order_id: Optional[str] = None) -> OrderReport:
        raw_direction = payload.get("direction")
        if raw_direction in (OrderDirection.BUY.value, OrderDirection.SELL.value):
            direction = OrderDirection(raw_direction)
        return OrderReport(
            order_id=payload.get("orderId") or client_order_id or "",
            instrument_uid=payload.get("instrumentUid") or instrument_id,
            direction=direction or OrderDirection.BUY,
            status=ExecutionStatus.parse(payload.get("executionReportStatus")),
            lots_requested=self._as_int(payload.get("lotsRequested")),
            lots_executed=self._as_int(payload.get("lotsExecuted")),
            executed_price=Price.from_quotation(payload.get("executedOrderPrice")),
            client_order_id=client_order_id,
            message=payload.get("message") or "",
            raw=payload,
        )

    @staticmethod
    def _as_int(value: Any) -> int:
        if value is None:
            return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0
