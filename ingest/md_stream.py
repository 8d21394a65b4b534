"""Market-data stream multiplexer over one bidirectional websocket."""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus

from api.metrics import metrics
from config import ClientConfig
from ingest.invest_rest import (
    API_PACKAGE,
    CODE_UNAVAILABLE,
    TransportFatal,
    TransportUnavailable,
    classify_error,
    describe_error,
)
from market.models import Candle, CandleInterval, LastPrice, OrderBook, Trade, TradingStatus
from monitoring.async_utils import BoundedReceiver, ReceiverClosed


logger = logging.getLogger(__name__)

SUBSCRIBE = 'SUBSCRIPTION_ACTION_SUBSCRIBE'
UNSUBSCRIBE = 'SUBSCRIPTION_ACTION_UNSUBSCRIBE'
STATUS_SUCCESS = 'SUBSCRIPTION_STATUS_SUCCESS'


class Topic(str, Enum):
    CANDLES = 'candles'
    ORDER_BOOKS = 'order_books'
    TRADES = 'trades'
    TRADING_STATUSES = 'trading_statuses'
    LAST_PRICES = 'last_prices'


# request key, response key, subscription list key per topic
_PROTOCOL = {
    Topic.CANDLES: ('subscribeCandlesRequest', 'subscribeCandlesResponse', 'candlesSubscriptions'),
    Topic.ORDER_BOOKS: ('subscribeOrderBookRequest', 'subscribeOrderBookResponse', 'orderBookSubscriptions'),
    Topic.TRADES: ('subscribeTradesRequest', 'subscribeTradesResponse', 'tradeSubscriptions'),
    Topic.TRADING_STATUSES: ('subscribeInfoRequest', 'subscribeInfoResponse', 'infoSubscriptions'),
    Topic.LAST_PRICES: ('subscribeLastPriceRequest', 'subscribeLastPriceResponse', 'lastPriceSubscriptions'),
}
_RESPONSE_TOPICS = {response: topic for topic, (_, response, _) in _PROTOCOL.items()}

# payload variant -> (topic, parser)
_PAYLOADS = {
    'candle': (Topic.CANDLES, Candle.from_payload),
    'orderbook': (Topic.ORDER_BOOKS, OrderBook.from_payload),
    'trade': (Topic.TRADES, Trade.from_payload),
    'tradingStatus': (Topic.TRADING_STATUSES, TradingStatus.from_payload),
    'lastPrice': (Topic.LAST_PRICES, LastPrice.from_payload),
}


class StreamClosed(Exception):
    """Raised when subscribing on a stream that was stopped."""


@dataclass(frozen=True)
class CandleSubscription:
    interval: CandleInterval
    waiting_close: bool


@dataclass(frozen=True)
class OrderBookSubscription:
    depth: int


class SubscriptionSet:
    """Authoritative per-topic record of what the stream is subscribed to."""

    def __init__(self):
        self.topics: Dict[Topic, Dict[str, Any]] = {topic: {} for topic in Topic}

    def get(self, topic: Topic) -> Dict[str, Any]:
        return self.topics[topic]

    def snapshot(self) -> Dict[Topic, Dict[str, Any]]:
        return {topic: dict(entries) for topic, entries in self.topics.items()}

    def is_empty(self) -> bool:
        return not any(self.topics.values())


class Connection:
    """What the stream needs from a transport connection (a websockets client connection fits)."""

    async def send(self, message: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def recv(self) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


Connector = Callable[[], Awaitable[Connection]]


def websocket_connector(client_config: ClientConfig, ping_interval: float = 20.0) -> Connector:
    url = f"wss://{client_config.host}/ws/{API_PACKAGE}.MarketDataStreamService/MarketDataStream"
    headers = {"x-app-name": client_config.app_name}
    if client_config.token:
        headers["Authorization"] = f"Bearer {client_config.token}"

    async def _connect() -> Connection:
        try:
            return await websockets.connect(
                url,
                additional_headers=headers,
                subprotocols=["json"],
                ping_interval=ping_interval,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            body = exc.response.body.decode('utf-8', 'replace') if exc.response.body else ''
            raise classify_error(status, None, f"stream handshake rejected ({status})",
                                 None, exc.response.headers.get('x-tracking-id'), body) from exc
        except OSError as exc:
            raise TransportUnavailable(0, CODE_UNAVAILABLE, str(exc)) from exc

    return _connect


class MarketDataStream:
    def __init__(self, client_config: ClientConfig, connector: Optional[Connector] = None,
                 capacity: int = 1, sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self.config = client_config
        self._connector = connector or websocket_connector(client_config)
        self._sleep = sleep or asyncio.sleep
        self.max_attempts = 1 if client_config.disable_all_retry else max(1, client_config.max_attempts)
        self.backoff_s = client_config.backoff_s

        self.subscriptions = SubscriptionSet()
        self.receivers: Dict[Topic, BoundedReceiver] = {
            topic: BoundedReceiver(topic.value, capacity) for topic in Topic
        }
        self._acked: Dict[Topic, Set[str]] = {topic: set() for topic in Topic}
        self.my_subscriptions: Optional[Dict[str, Any]] = None

        self.running = False
        self.stopped = False
        self._conn: Optional[Connection] = None
        self._send_lock = asyncio.Lock()
        self._listen_task: Optional[asyncio.Task] = None
        self._failures = 0

    # Receivers ----------------------------------------------------------
    @property
    def candles(self) -> BoundedReceiver:
        return self.receivers[Topic.CANDLES]

    @property
    def order_books(self) -> BoundedReceiver:
        return self.receivers[Topic.ORDER_BOOKS]

    @property
    def trades(self) -> BoundedReceiver:
        return self.receivers[Topic.TRADES]

    @property
    def trading_statuses(self) -> BoundedReceiver:
        return self.receivers[Topic.TRADING_STATUSES]

    @property
    def last_prices(self) -> BoundedReceiver:
        return self.receivers[Topic.LAST_PRICES]

    # Subscriptions ------------------------------------------------------
    async def subscribe_candles(self, ids: Iterable[str], interval: CandleInterval,
                                waiting_close: Optional[bool] = None) -> BoundedReceiver:
        interval = CandleInterval(interval)
        if waiting_close is None:
            waiting_close = interval == CandleInterval.ONE_MINUTE
        params = CandleSubscription(interval, waiting_close)
        await self._subscribe(Topic.CANDLES, ids, params)
        return self.candles

    async def unsubscribe_candles(self, ids: Iterable[str]) -> None:
        await self._unsubscribe(Topic.CANDLES, ids)

    async def subscribe_order_book(self, ids: Iterable[str], depth: int) -> BoundedReceiver:
        await self._subscribe(Topic.ORDER_BOOKS, ids, OrderBookSubscription(int(depth)))
        return self.order_books

    async def unsubscribe_order_book(self, ids: Iterable[str]) -> None:
        await self._unsubscribe(Topic.ORDER_BOOKS, ids)

    async def subscribe_trades(self, ids: Iterable[str]) -> BoundedReceiver:
        await self._subscribe(Topic.TRADES, ids, None)
        return self.trades

    async def unsubscribe_trades(self, ids: Iterable[str]) -> None:
        await self._unsubscribe(Topic.TRADES, ids)

    async def subscribe_info(self, ids: Iterable[str]) -> BoundedReceiver:
        await self._subscribe(Topic.TRADING_STATUSES, ids, None)
        return self.trading_statuses

    async def unsubscribe_info(self, ids: Iterable[str]) -> None:
        await self._unsubscribe(Topic.TRADING_STATUSES, ids)

    async def subscribe_last_price(self, ids: Iterable[str]) -> BoundedReceiver:
        await self._subscribe(Topic.LAST_PRICES, ids, None)
        return self.last_prices

    async def unsubscribe_last_price(self, ids: Iterable[str]) -> None:
        await self._unsubscribe(Topic.LAST_PRICES, ids)

    async def unsubscribe_all(self) -> None:
        for topic in Topic:
            entries = self.subscriptions.get(topic)
            if not entries:
                continue
            requests = self._grouped_requests(topic, entries, UNSUBSCRIBE)
            entries.clear()
            self._acked[topic].clear()
            for request in requests:
                await self._send_if_connected(request)

    def subscriptions_snapshot(self) -> Dict[Topic, Dict[str, Any]]:
        return self.subscriptions.snapshot()

    def unacknowledged(self) -> Dict[Topic, List[str]]:
        """Subscribed ids the server never confirmed, per topic."""
        pending = {}
        for topic, entries in self.subscriptions.topics.items():
            missing = sorted(set(entries) - self._acked[topic])
            if missing:
                pending[topic] = missing
        return pending

    async def get_my_subscriptions(self) -> None:
        """Ask the server for its view; the answer lands in ``my_subscriptions``."""
        await self._send_if_connected({'getMySubscriptions': {}})

    async def _subscribe(self, topic: Topic, ids: Iterable[str], params: Any) -> None:
        if self.stopped:
            raise StreamClosed("stream is stopped")
        entries = self.subscriptions.get(topic)
        fresh = [i for i in dict.fromkeys(ids) if i not in entries or entries[i] != params]
        if not fresh:
            return
        for instrument_id in fresh:
            entries[instrument_id] = params
            self._acked[topic].discard(instrument_id)
        for request in self._grouped_requests(topic, {i: params for i in fresh}, SUBSCRIBE):
            await self._send_if_connected(request)

    async def _unsubscribe(self, topic: Topic, ids: Iterable[str]) -> None:
        entries = self.subscriptions.get(topic)
        present = {i: entries[i] for i in dict.fromkeys(ids) if i in entries}
        if not present:
            return
        for instrument_id in present:
            del entries[instrument_id]
            self._acked[topic].discard(instrument_id)
        for request in self._grouped_requests(topic, present, UNSUBSCRIBE):
            await self._send_if_connected(request)

    def _grouped_requests(self, topic: Topic, entries: Dict[str, Any], action: str) -> List[Dict[str, Any]]:
        request_key = _PROTOCOL[topic][0]
        if topic == Topic.CANDLES:
            groups: Dict[Tuple[CandleInterval, bool], List[str]] = {}
            for instrument_id, sub in entries.items():
                groups.setdefault((sub.interval, sub.waiting_close), []).append(instrument_id)
            return [
                {request_key: {
                    'subscriptionAction': action,
                    'instruments': [
                        {'instrumentId': i, 'interval': interval.subscription} for i in ids
                    ],
                    'waitingClose': waiting_close,
                }}
                for (interval, waiting_close), ids in groups.items()
            ]
        if topic == Topic.ORDER_BOOKS:
            by_depth: Dict[int, List[str]] = {}
            for instrument_id, sub in entries.items():
                by_depth.setdefault(sub.depth, []).append(instrument_id)
            return [
                {request_key: {
                    'subscriptionAction': action,
                    'instruments': [{'instrumentId': i, 'depth': depth} for i in ids],
                }}
                for depth, ids in by_depth.items()
            ]
        return [{request_key: {
            'subscriptionAction': action,
            'instruments': [{'instrumentId': i} for i in entries],
        }}]

    async def _send_if_connected(self, request: Dict[str, Any]) -> None:
        # while disconnected the subscription set is replayed on connect
        if self._conn is None:
            return
        async with self._send_lock:
            await self._conn.send(json.dumps(request))

    async def _resubscribe_all(self) -> None:
        for topic in Topic:
            entries = self.subscriptions.get(topic)
            if not entries:
                continue
            for request in self._grouped_requests(topic, entries, SUBSCRIBE):
                async with self._send_lock:
                    await self._conn.send(json.dumps(request))

    # Driver -------------------------------------------------------------
    async def listen(self) -> None:
        """Receive until stopped; restarts the connection while the service is unavailable."""
        if self.stopped:
            return
        self.running = True
        self._listen_task = asyncio.current_task()
        self._failures = 0
        try:
            while self.running:
                try:
                    await self._open()
                    await self._receive_loop()
                except asyncio.CancelledError:
                    break
                except TransportFatal:
                    raise
                except (ConnectionClosed, ConnectionError, OSError, TransportUnavailable) as exc:
                    if not self.running:
                        break
                    self._failures += 1
                    if self._failures >= self.max_attempts:
                        logger.error("Market data stream failed after %s attempts: %s",
                                     self._failures, describe_error(exc))
                        raise
                    logger.warning("Market data stream error: %s; restarting in %.1fs (attempt %s)",
                                   describe_error(exc), self.backoff_s, self._failures)
                    metrics.record_stream_reconnect()
                    await self._drop_connection()
                    await self._sleep(self.backoff_s)
        finally:
            self.running = False
            await self._drop_connection()
            self._shutdown()

    async def _open(self) -> None:
        conn = await self._connector()
        self._conn = conn
        await self._resubscribe_all()
        logger.info("Market data stream connected")

    async def _receive_loop(self) -> None:
        while self.running:
            raw = await self._conn.recv()
            # a delivered message proves the connection healthy again
            self._failures = 0
            await self._dispatch(raw)

    async def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            logger.warning("Undecodable stream message dropped: %.120s", raw)
            return
        if not isinstance(message, dict):
            logger.warning("Unexpected stream message dropped: %.120s", message)
            return

        for key, body in message.items():
            if key in _PAYLOADS:
                topic, parser = _PAYLOADS[key]
                metrics.record_stream_message(topic.value)
                try:
                    await self.receivers[topic].put(parser(body))
                except ReceiverClosed:
                    return
                return
            if key in _RESPONSE_TOPICS:
                self._record_acks(_RESPONSE_TOPICS[key], body)
                return
            if key == 'getMySubscriptions' or key == 'mySubscriptions':
                self.my_subscriptions = body
                return
            if key == 'ping':
                return
        logger.warning("Unknown stream payload dropped: %s", sorted(message))

    def _record_acks(self, topic: Topic, body: Dict[str, Any]) -> None:
        list_key = _PROTOCOL[topic][2]
        entries = self.subscriptions.get(topic)
        for item in body.get(list_key) or []:
            ids = {item.get('instrumentId'), item.get('instrumentUid'), item.get('figi')}
            status = item.get('subscriptionStatus')
            matched = [i for i in ids if i and i in entries]
            if status != STATUS_SUCCESS:
                logger.warning("%s subscription for %s not accepted: %s", topic.value,
                               matched or sorted(i for i in ids if i), status)
                continue
            self._acked[topic].update(matched)

    async def _drop_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await conn.close()
            except (ConnectionClosed, OSError) as exc:
                logger.debug("Stream close error ignored: %s", exc)

    def _shutdown(self) -> None:
        for receiver in self.receivers.values():
            receiver.close()

    async def stop(self) -> None:
        """Stop the driver; receivers are closed once it exits."""
        self.stopped = True
        self.running = False
        task = self._listen_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        else:
            await self._drop_connection()
            self._shutdown()
        logger.info("Market data stream stopped")
