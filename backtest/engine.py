import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

from analytics.corridor import AnalyseMode, Corridor, CorridorAnalyzer, CorridorParams, time_interval_by_days
from ingest.candle_store import CandleStore
from market.models import Candle, CandleInterval
from market.price import Price
from risk.position_sizer import SizingDecision


logger = logging.getLogger(__name__)

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class BacktestConfig:
    analyse: AnalyseMode
    min_profit: float
    stop_loss: float
    days_to_calculate: int
    commission: float
    low_percentile: float = 0.0
    high_percentile: float = 0.0

    def corridor_params(self) -> CorridorParams:
        return CorridorParams(
            mode=self.analyse,
            min_profit_pct=self.min_profit,
            commission_pct=self.commission,
            low_percentile=self.low_percentile,
            high_percentile=self.high_percentile,
        )

    def as_dict(self) -> Dict:
        data = asdict(self)
        data['analyse'] = self.analyse.value
        return data


@dataclass
class DayResult:
    day: datetime
    profit: Decimal
    percent: Decimal
    instruments: int = 0


@dataclass
class BacktestResult:
    config: BacktestConfig
    total_profit: float
    average_day_percent: float
    trading_days: int
    days: List[DayResult] = field(default_factory=list)

    def as_row(self) -> Dict:
        row = self.config.as_dict()
        row.update(
            total_profit=self.total_profit,
            average_day_percent=self.average_day_percent,
            trading_days=self.trading_days,
        )
        return row


class IntervalBacktestEngine:
    """Replays stored minute candles through the corridor strategy one day at a time."""

    def __init__(self, store: CandleStore, instruments: Mapping[str, SizingDecision], top_n: int,
                 interval: CandleInterval = CandleInterval.ONE_MINUTE):
        self.store = store
        self.instruments = dict(instruments)
        self.top_n = int(top_n)
        self.interval = CandleInterval(interval)

    def select(self, day: datetime, bc: BacktestConfig) -> List[Corridor]:
        analyzer = CorridorAnalyzer(bc.corridor_params())
        start, end = time_interval_by_days(bc.days_to_calculate, day)
        corridors = []
        for uid, sizing in self.instruments.items():
            candles = self.store.load(uid, self.interval, start, end)
            corridors.append(analyzer.analyse(sizing.instrument, candles))
        return analyzer.rank(corridors, self.top_n)

    def run_day(self, day: datetime, bc: BacktestConfig) -> DayResult:
        corridors = self.select(day, bc)
        profit = Decimal(0)
        required = Decimal(0)
        for corridor in corridors:
            sizing = self.instruments[corridor.instrument_uid]
            units = sizing.instrument.lot * sizing.quantity
            required += corridor.low.to_decimal() * units
            candles = self.store.load(corridor.instrument_uid, self.interval, day, day + timedelta(days=1))
            profit += self._trade_day(corridor, candles, sizing, bc)
        percent = profit / required * _HUNDRED if required else Decimal(0)
        logger.debug("%s profit %s (%s%%) on %s instruments", day.date(), profit, percent, len(corridors))
        return DayResult(day, profit, percent, len(corridors))

    @staticmethod
    def _trade_day(corridor: Corridor, candles: List[Candle], sizing: SizingDecision,
                   bc: BacktestConfig) -> Decimal:
        units = sizing.instrument.lot * sizing.quantity
        commission = Decimal(str(bc.commission)) / _HUNDRED
        low = corridor.low.to_decimal()
        high = corridor.high.to_decimal()
        loss_price = Price.from_decimal(
            low - low * Decimal(str(bc.stop_loss)) / _HUNDRED,
            sizing.instrument.min_price_increment,
        ).to_decimal()

        profit = Decimal(0)
        in_stock = False
        last = len(candles) - 1
        for i, candle in enumerate(candles):
            candle_high = candle.high.to_decimal()
            candle_low = candle.low.to_decimal()
            if not in_stock:
                # a resting buy at the corridor low fills inside any candle whose range reaches it
                if candle_low <= low <= candle_high and i < last:
                    in_stock = True
                    profit -= low * commission * units
                continue
            if high <= candle_high:
                exit_price = high
            elif candle_low <= loss_price:
                exit_price = loss_price
            elif i == last:
                exit_price = candle.close.to_decimal()
            else:
                continue
            profit += (exit_price - low) * units
            profit -= exit_price * commission * units
            in_stock = False
        return profit

    def test_config(self, start: datetime, stop: datetime, bc: BacktestConfig) -> BacktestResult:
        """Sum per-day results over [start, stop); only days with a non-zero profit count as trading."""
        day = start.replace(hour=0, minute=0, second=0, microsecond=0)
        total_profit = Decimal(0)
        total_percent = Decimal(0)
        trading_days = 0
        days = []
        while day < stop:
            result = self.run_day(day, bc)
            days.append(result)
            if result.profit != 0:
                trading_days += 1
                total_profit += result.profit
                total_percent += result.percent
            day += timedelta(days=1)
        average = total_percent / trading_days if trading_days else Decimal(0)
        return BacktestResult(bc, float(total_profit), float(average), trading_days, days)


def evaluate_config(db_path: str, instruments: Mapping[str, SizingDecision], top_n: int,
                    start: datetime, stop: datetime, bc: BacktestConfig,
                    interval: Optional[CandleInterval] = None) -> BacktestResult:
    """Pool entry point: each worker opens its own store connection."""
    with CandleStore(db_path) as store:
        engine = IntervalBacktestEngine(store, instruments, top_n, interval or CandleInterval.ONE_MINUTE)
        return engine.test_config(start, stop, bc)
