"""Typed market entities parsed from gateway JSON payloads."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from market.price import Price, ZERO


class CandleInterval(str, Enum):
    ONE_MINUTE = 'CANDLE_INTERVAL_1_MIN'
    FIVE_MINUTES = 'CANDLE_INTERVAL_5_MIN'
    FIFTEEN_MINUTES = 'CANDLE_INTERVAL_15_MIN'
    HOUR = 'CANDLE_INTERVAL_HOUR'
    DAY = 'CANDLE_INTERVAL_DAY'

    @property
    def seconds(self) -> int:
        return _INTERVAL_SECONDS[self]

    @property
    def subscription(self) -> str:
        """Matching stream subscription interval name."""
        return _SUBSCRIPTION_INTERVALS[self]

    @classmethod
    def from_subscription(cls, name: str) -> 'CandleInterval':
        for interval, sub in _SUBSCRIPTION_INTERVALS.items():
            if sub == name:
                return interval
        return cls(name)


_INTERVAL_SECONDS = {
    CandleInterval.ONE_MINUTE: 60,
    CandleInterval.FIVE_MINUTES: 300,
    CandleInterval.FIFTEEN_MINUTES: 900,
    CandleInterval.HOUR: 3600,
    CandleInterval.DAY: 86400,
}

_SUBSCRIPTION_INTERVALS = {
    CandleInterval.ONE_MINUTE: 'SUBSCRIPTION_INTERVAL_ONE_MINUTE',
    CandleInterval.FIVE_MINUTES: 'SUBSCRIPTION_INTERVAL_FIVE_MINUTES',
    CandleInterval.FIFTEEN_MINUTES: 'SUBSCRIPTION_INTERVAL_FIFTEEN_MINUTES',
    CandleInterval.HOUR: 'SUBSCRIPTION_INTERVAL_ONE_HOUR',
    CandleInterval.DAY: 'SUBSCRIPTION_INTERVAL_ONE_DAY',
}


def parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = date_parser.isoparse(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


@dataclass(frozen=True)
class Instrument:
    uid: str
    figi: str = ''
    ticker: str = ''
    lot: int = 1
    currency: str = 'rub'
    min_price_increment: Price = Price(0, 10_000_000)
    exchange: str = ''
    for_qual_investor: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Instrument':
        return cls(
            uid=payload.get('uid') or payload.get('instrumentUid') or '',
            figi=payload.get('figi') or '',
            ticker=payload.get('ticker') or '',
            lot=int(payload.get('lot') or 1),
            currency=(payload.get('currency') or 'rub').lower(),
            min_price_increment=Price.from_quotation(payload.get('minPriceIncrement')),
            exchange=payload.get('exchange') or '',
            for_qual_investor=bool(payload.get('forQualInvestorFlag', False)),
        )


@dataclass
class Candle:
    instrument_uid: str
    interval: CandleInterval
    time: datetime
    open: Price
    close: Price
    high: Price
    low: Price
    volume: int = 0
    is_complete: bool = True

    def is_consistent(self) -> bool:
        return (
            self.low <= self.open <= self.high
            and self.low <= self.close <= self.high
            and self.volume >= 0
        )

    def is_aligned(self) -> bool:
        return int(self.time.timestamp()) % self.interval.seconds == 0

    def mid_price(self) -> float:
        return (self.high.to_float() + self.low.to_float()
                + self.close.to_float() + self.open.to_float()) / 4

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], instrument_uid: str = '',
                     interval: CandleInterval = CandleInterval.ONE_MINUTE) -> 'Candle':
        """Parse a historic candle or a streamed candle payload."""
        if payload.get('interval'):
            interval = CandleInterval.from_subscription(payload['interval'])
        return cls(
            instrument_uid=payload.get('instrumentUid') or instrument_uid,
            interval=interval,
            time=parse_time(payload.get('time')),
            open=Price.from_quotation(payload.get('open')),
            close=Price.from_quotation(payload.get('close')),
            high=Price.from_quotation(payload.get('high')),
            low=Price.from_quotation(payload.get('low')),
            volume=int(payload.get('volume') or 0),
            is_complete=bool(payload.get('isComplete', True)),
        )


@dataclass(frozen=True)
class BookLevel:
    price: Price
    quantity: int


@dataclass
class OrderBook:
    figi: str
    instrument_uid: str
    depth: int
    is_consistent: bool
    time: Optional[datetime]
    limit_up: Price
    limit_down: Price
    bids: List[BookLevel] = field(default_factory=list)
    asks: List[BookLevel] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'OrderBook':
        def _levels(items):
            levels = [
                BookLevel(Price.from_quotation(item.get('price')), int(item.get('quantity') or 0))
                for item in items or []
            ]
            return [level for level in levels if level.quantity > 0]

        return cls(
            figi=payload.get('figi') or '',
            instrument_uid=payload.get('instrumentUid') or '',
            depth=int(payload.get('depth') or 0),
            is_consistent=bool(payload.get('isConsistent', False)),
            time=parse_time(payload.get('time')),
            limit_up=Price.from_quotation(payload.get('limitUp')),
            limit_down=Price.from_quotation(payload.get('limitDown')),
            bids=_levels(payload.get('bids')),
            asks=_levels(payload.get('asks')),
        )


@dataclass
class Trade:
    figi: str
    instrument_uid: str
    direction: str
    price: Price
    quantity: int
    time: Optional[datetime]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'Trade':
        return cls(
            figi=payload.get('figi') or '',
            instrument_uid=payload.get('instrumentUid') or '',
            direction=payload.get('direction') or '',
            price=Price.from_quotation(payload.get('price')),
            quantity=int(payload.get('quantity') or 0),
            time=parse_time(payload.get('time')),
        )


@dataclass
class LastPrice:
    figi: str
    instrument_uid: str
    price: Price
    time: Optional[datetime]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'LastPrice':
        return cls(
            figi=payload.get('figi') or '',
            instrument_uid=payload.get('instrumentUid') or '',
            price=Price.from_quotation(payload.get('price')),
            time=parse_time(payload.get('time')),
        )


@dataclass
class TradingStatus:
    figi: str
    instrument_uid: str
    status: str
    time: Optional[datetime]
    limit_order_available: bool = False
    market_order_available: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'TradingStatus':
        return cls(
            figi=payload.get('figi') or '',
            instrument_uid=payload.get('instrumentUid') or '',
            status=payload.get('tradingStatus') or '',
            time=parse_time(payload.get('time')),
            limit_order_available=bool(payload.get('limitOrderAvailableFlag', False)),
            market_order_available=bool(payload.get('marketOrderAvailableFlag', False)),
        )


@dataclass(frozen=True)
class TradingDay:
    exchange: str
    date: datetime
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    is_trading_day: bool

    @classmethod
    def from_payload(cls, exchange: str, payload: Dict[str, Any]) -> 'TradingDay':
        return cls(
            exchange=exchange,
            date=parse_time(payload.get('date')),
            start_time=parse_time(payload.get('startTime')),
            end_time=parse_time(payload.get('endTime')),
            is_trading_day=bool(payload.get('isTradingDay', False)),
        )


@dataclass
class MoneyValue:
    currency: str
    amount: Price

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'MoneyValue':
        return cls(
            currency=(payload.get('currency') or '').lower(),
            amount=Price.from_quotation(payload),
        )


@dataclass
class SecurityPosition:
    instrument_uid: str
    figi: str
    balance: int
    blocked: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'SecurityPosition':
        return cls(
            instrument_uid=payload.get('instrumentUid') or '',
            figi=payload.get('figi') or '',
            balance=int(payload.get('balance') or 0),
            blocked=int(payload.get('blocked') or 0),
        )


@dataclass
class PositionsSnapshot:
    """Account money and securities as reported by the positions call."""

    money: Dict[str, Price] = field(default_factory=dict)
    blocked: Dict[str, Price] = field(default_factory=dict)
    securities: List[SecurityPosition] = field(default_factory=list)

    def available(self, currency: str) -> Price:
        return self.money.get(currency.lower(), ZERO)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'PositionsSnapshot':
        money = {}
        for item in payload.get('money') or []:
            value = MoneyValue.from_payload(item)
            money[value.currency] = value.amount
        blocked = {}
        for item in payload.get('blocked') or []:
            value = MoneyValue.from_payload(item)
            blocked[value.currency] = value.amount
        securities = [SecurityPosition.from_payload(item) for item in payload.get('securities') or []]
        return cls(money=money, blocked=blocked, securities=securities)


@dataclass
class Position:
    """Executor-owned state of one traded instrument."""

    instrument: Instrument
    quantity: int
    stop_loss_percent: float
    in_stock: bool = False
    entry_price: Price = ZERO

    @property
    def lot(self) -> int:
        return self.instrument.lot

    @property
    def currency(self) -> str:
        return self.instrument.currency
