import sys
sys.path.insert(0, '.')

import asyncio
import json

import pytest

from config import ClientConfig
from ingest.invest_rest import TransportFatal
from ingest.md_stream import MarketDataStream
from market.models import Instrument, PositionsSnapshot, SecurityPosition
from market.price import Price
from monitoring.async_utils import BoundedReceiver
from orchestration.bots import InsufficientFunds, OrderBookBot
from orchestration.session_timer import SessionEvent
from risk.position_sizer import RiskManager
from strategy.execution_types import ExecutionStatus, OrderDirection, OrderReport

SANDBOX = ClientConfig(endpoint='sandbox-invest-public-api.tinkoff.ru:443')
PRODUCTION = ClientConfig(endpoint='invest-public-api.tinkoff.ru:443')


class FakeBroker:
    """Account and order endpoints backed by in-memory state."""

    def __init__(self, money=Price(10_000, 0)):
        self.money = money
        self.holdings = {}
        self.orders = []
        self.paid_in = []

    async def instruments_by_uid(self, uids):
        return {uid: Instrument(uid, ticker=uid.upper()) for uid in uids}

    async def last_prices(self, ids):
        return {uid: Price(100, 0) for uid in ids}

    async def positions(self):
        return PositionsSnapshot(
            money={'rub': self.money},
            securities=[SecurityPosition(uid, '', balance) for uid, balance in self.holdings.items() if balance],
        )

    async def sandbox_pay_in(self, currency, amount):
        self.paid_in.append((currency, amount))
        self.money = self.money + amount
        return self.money

    async def post_market_order(self, instrument_id, quantity, direction):
        self.orders.append((instrument_id, quantity, direction))
        sign = 1 if direction == OrderDirection.BUY else -1
        self.holdings[instrument_id] = self.holdings.get(instrument_id, 0) + sign * quantity
        return OrderReport(f"o-{len(self.orders)}", instrument_id, direction, ExecutionStatus.FILL,
                           quantity, quantity, Price(100, 0))

    async def active_orders(self):
        return []

    async def cancel_order(self, order_id):
        pass


class ScriptedTimer:
    """Emits session events from a script; callables in the script are awaited in between."""

    def __init__(self, steps):
        self.steps = steps
        self.events = BoundedReceiver('session', 1)

    async def run(self):
        try:
            for step in self.steps:
                if isinstance(step, SessionEvent):
                    await self.events.put(step)
                else:
                    await step()
        finally:
            self.events.close()


class FakeConnection:
    def __init__(self, script=()):
        self.script = list(script)
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        if self.script:
            return json.dumps(self.script.pop(0))
        await asyncio.Event().wait()

    async def close(self):
        pass


def _bid_heavy_book(uid):
    return {'orderbook': {
        'instrumentUid': uid, 'depth': 20, 'isConsistent': True,
        'bids': [{'price': {'units': '100', 'nano': 0}, 'quantity': '50'}],
        'asks': [{'price': {'units': '101', 'nano': 0}, 'quantity': '1'}],
    }}


def _risk():
    return RiskManager(min_profit_pct=0.5, stop_loss_pct=1.0, preferred_notional=0, max_notional=0)


def _until(predicate):
    async def wait():
        for _ in range(1000):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError('condition not reached')
    return wait


def test_session_trades_then_sells_out_on_stop():
    broker = FakeBroker()
    connections = []

    def stream_factory():
        conn = FakeConnection([_bid_heavy_book('uid-1')])
        connections.append(conn)

        async def connect():
            return conn

        return MarketDataStream(SANDBOX, connector=connect)

    bot = None
    timer = ScriptedTimer([
        SessionEvent.START,
        _until(lambda: bot.executor.in_stock('uid-1')),
        SessionEvent.STOP,
    ])
    bot = OrderBookBot(SANDBOX, broker, timer, stream_factory, ['uid-1'], depth=20, risk=_risk())

    asyncio.run(bot.run())

    assert broker.orders == [('uid-1', 1, OrderDirection.BUY), ('uid-1', 1, OrderDirection.SELL)]
    assert broker.holdings == {'uid-1': 0}
    sent_keys = sorted(next(iter(m)) for m in connections[0].sent)
    assert sent_keys == ['subscribeLastPriceRequest', 'subscribeOrderBookRequest']
    assert bot.stream is None


def test_session_failure_stops_the_bot():
    broker = FakeBroker()

    def stream_factory():
        async def connect():
            raise TransportFatal(401, 16, 'unauthenticated')

        return MarketDataStream(SANDBOX, connector=connect)

    timer = ScriptedTimer([SessionEvent.START, asyncio.Event().wait])
    bot = OrderBookBot(SANDBOX, broker, timer, stream_factory, ['uid-1'], risk=_risk())

    with pytest.raises(TransportFatal):
        asyncio.run(bot.run())
    assert broker.orders == []


def test_sandbox_shortfall_is_paid_in():
    broker = FakeBroker(money=Price(100, 0))
    bot = OrderBookBot(SANDBOX, broker, ScriptedTimer([]), None, ['uid-1'], risk=_risk())

    balance = asyncio.run(bot.check_money_balance(Price(250, 300_000_000)))

    assert broker.paid_in == [('rub', Price(151, 0))]
    assert balance == Price(251, 0)


def test_production_shortfall_raises():
    broker = FakeBroker(money=Price(100, 0))
    bot = OrderBookBot(PRODUCTION, broker, ScriptedTimer([]), None, ['uid-1'], risk=_risk())

    with pytest.raises(InsufficientFunds):
        asyncio.run(bot.check_money_balance(Price(250, 0)))
    assert broker.paid_in == []


def test_enough_money_needs_no_pay_in():
    broker = FakeBroker(money=Price(1000, 0))
    bot = OrderBookBot(SANDBOX, broker, ScriptedTimer([]), None, ['uid-1'], risk=_risk())

    assert asyncio.run(bot.check_money_balance(Price(250, 0))) == Price(1000, 0)
    assert broker.paid_in == []
