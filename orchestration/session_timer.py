import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from api.metrics import metrics
from market.models import TradingDay
from monitoring.async_utils import BoundedReceiver
from strategy.transports.invest import InvestTransport


logger = logging.getLogger(__name__)

LOOKAHEAD_WINDOW = timedelta(days=7)


class SessionEvent(str, Enum):
    START = 'START'
    STOP = 'STOP'


class SessionState(str, Enum):
    IDLE = 'idle'
    BEFORE_OPEN = 'before-open'
    OPEN = 'open'
    AFTER_CLOSE = 'after-close'


class NoTradingDay(Exception):
    """No trading day found within the look-ahead horizon."""


class SessionTimer:
    """Emits START at the main session open and STOP ``lead`` before it closes."""

    def __init__(self, transport: InvestTransport, exchange: str = 'MOEX',
                 lead: timedelta = timedelta(minutes=5), lookahead_windows: int = 4,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None,
                 capacity: int = 1):
        self.transport = transport
        self.exchange = exchange
        self.lead = lead
        self.lookahead_windows = max(1, int(lookahead_windows))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep
        self.events: BoundedReceiver[SessionEvent] = BoundedReceiver('session', capacity)
        self.state = SessionState.IDLE
        self.last_event: Optional[SessionEvent] = None

    async def run(self) -> None:
        try:
            while True:
                await self._cycle()
        except asyncio.CancelledError:
            logger.info("Session timer cancelled in state %s", self.state.value)
        finally:
            self.events.close()

    async def _cycle(self) -> None:
        now = self._clock()
        days = await self.transport.trading_schedules(self.exchange, now, now + timedelta(days=1))
        today = days[0] if days else None

        if today is None or not today.is_trading_day or today.start_time is None or today.end_time is None:
            self.state = SessionState.IDLE
            next_day = await self.next_trading_day(now)
            logger.info("%s is closed today; next session %s", self.exchange, next_day.start_time)
            await self._wait_until(next_day.start_time)
            return

        stop_at = today.end_time - self.lead
        if now < today.start_time:
            self.state = SessionState.BEFORE_OPEN
            await self._wait_until(today.start_time)
            await self._emit(SessionEvent.START)
            await self._run_session(stop_at)
        elif now < stop_at:
            await self._emit(SessionEvent.START)
            await self._run_session(stop_at)
        elif now < today.end_time and self.last_event != SessionEvent.STOP:
            await self._emit(SessionEvent.STOP)

        self.state = SessionState.AFTER_CLOSE
        next_day = await self.next_trading_day(today.end_time)
        logger.info("Next %s session starts %s", self.exchange, next_day.start_time)
        await self._wait_until(next_day.start_time)
        self.state = SessionState.IDLE

    async def _run_session(self, stop_at: datetime) -> None:
        self.state = SessionState.OPEN
        await self._wait_until(stop_at)
        await self._emit(SessionEvent.STOP)

    async def next_trading_day(self, after: datetime) -> TradingDay:
        """First trading day whose session starts after ``after``, scanned in weekly windows."""
        for window in range(self.lookahead_windows):
            begin = after + LOOKAHEAD_WINDOW * window
            days = await self.transport.trading_schedules(self.exchange, begin, begin + LOOKAHEAD_WINDOW)
            for day in days:
                if day.is_trading_day and day.start_time is not None and day.start_time > after:
                    return day
        raise NoTradingDay(
            f"no {self.exchange} trading day within {self.lookahead_windows} weeks after {after.isoformat()}"
        )

    async def _wait_until(self, moment: datetime) -> None:
        delay = (moment - self._clock()).total_seconds()
        if delay > 0:
            await self._sleep(delay)

    async def _emit(self, event: SessionEvent) -> None:
        logger.info("Session %s on %s", event.value, self.exchange)
        self.last_event = event
        metrics.record_session_event(event.value)
        await self.events.put(event)
