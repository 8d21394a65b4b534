import asyncio
import logging
import os
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import partial
from itertools import product
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Union

import pandas as pd

from analytics.corridor import AnalyseMode
from api.metrics import metrics
from backtest.engine import BacktestConfig, BacktestResult, evaluate_config
from risk.position_sizer import SizingDecision


logger = logging.getLogger(__name__)

PoolFactory = Callable[[int], Executor]


def frange(start: float, stop: float, step: Union[float, str]) -> List[float]:
    """Values in [start, stop) stepped in decimal so 0.1 steps do not drift."""
    current = Decimal(str(start))
    end = Decimal(str(stop))
    increment = Decimal(str(step))
    values = []
    while current < end:
        values.append(float(current))
        current += increment
    return values


@dataclass(frozen=True)
class SweepBounds:
    stop_loss_min: float
    stop_loss_max: float
    days_min: int
    days_max: int
    min_profit_min: float
    min_profit_max: float
    percentile_min: int = 0
    percentile_max: int = 0
    commission: float = 0.0
    include_math_stat: bool = True

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'SweepBounds':
        return cls(
            stop_loss_min=float(cfg['stop_loss_min']),
            stop_loss_max=float(cfg['stop_loss_max']),
            days_min=int(cfg['days_min']),
            days_max=int(cfg['days_max']),
            min_profit_min=float(cfg['min_profit_min']),
            min_profit_max=float(cfg['min_profit_max']),
            percentile_min=int(cfg.get('percentile_min', 0)),
            percentile_max=int(cfg.get('percentile_max', 0)),
            commission=float(cfg.get('commission_pct', 0.0)),
            include_math_stat=bool(cfg.get('include_math_stat', True)),
        )


def generate_configs(bounds: SweepBounds) -> List[BacktestConfig]:
    stop_losses = frange(bounds.stop_loss_min, bounds.stop_loss_max, '0.1')
    days = list(range(bounds.days_min, bounds.days_max))
    min_profits = frange(bounds.min_profit_min, bounds.min_profit_max, '0.1')
    percentiles = range(bounds.percentile_min, bounds.percentile_max) if bounds.include_math_stat else []

    configs = []
    for stop_loss, day_count, min_profit in product(stop_losses, days, min_profits):
        configs.append(BacktestConfig(
            analyse=AnalyseMode.BEST_WIDTH,
            min_profit=min_profit,
            stop_loss=stop_loss,
            days_to_calculate=day_count,
            commission=bounds.commission,
        ))
        for p in percentiles:
            configs.append(BacktestConfig(
                analyse=AnalyseMode.MATH_STAT,
                min_profit=min_profit,
                stop_loss=stop_loss,
                days_to_calculate=day_count,
                commission=bounds.commission,
                low_percentile=float(p),
                high_percentile=float(100 - p),
            ))
    return configs


class Optimizer:
    """Evaluates backtest configurations in a worker pool and ranks them."""

    def __init__(self, db_path: str, instruments: Mapping[str, SizingDecision], top_n: int,
                 start: datetime, stop: datetime, workers: Optional[int] = None,
                 pool_factory: Optional[PoolFactory] = None):
        self.db_path = str(db_path)
        self.instruments = dict(instruments)
        self.top_n = top_n
        self.start = start
        self.stop = stop
        self.workers = workers or os.cpu_count() or 1
        self.pool_factory = pool_factory or (lambda n: ProcessPoolExecutor(max_workers=n))

    async def run(self, configs: List[BacktestConfig]) -> List[BacktestResult]:
        """Results sorted ascending by average day percent; cancelling aborts pending work."""
        logger.info("Testing %s configurations on %s workers", len(configs), self.workers)
        loop = asyncio.get_running_loop()
        pool = self.pool_factory(self.workers)
        futures = [
            loop.run_in_executor(pool, partial(
                evaluate_config, self.db_path, self.instruments, self.top_n, self.start, self.stop, bc,
            ))
            for bc in configs
        ]
        try:
            results = await asyncio.gather(*futures)
        except BaseException:
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown(wait=True)
        for _ in results:
            metrics.record_backtest_config()
        return sorted(results, key=lambda r: r.average_day_percent)


def results_frame(results: List[BacktestResult]) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in results])


def write_report(results: List[BacktestResult], path: Union[str, Path], top: int = 10) -> pd.DataFrame:
    """Write the ranked sweep to CSV and log the best configurations."""
    frame = results_frame(results)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)
    logger.info("Backtest report with %s rows written to %s", len(frame), path)
    for result in reversed(results[-top:]):
        logger.info(
            "%s total_profit=%.3f average_day_percent=%.3f trading_days=%s",
            result.config.as_dict(), result.total_profit, result.average_day_percent, result.trading_days,
        )
    return frame
