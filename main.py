import argparse
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from analytics.corridor import CorridorAnalyzer, CorridorParams
from api.metrics import start_metrics_server
from backtest.optimizer import Optimizer, SweepBounds, generate_configs, write_report
from config import ClientConfig, config, load_client_config
from ingest.candle_store import CandleStore
from ingest.invest_rest import InvestRESTClient
from ingest.md_stream import MarketDataStream
from market.models import CandleInterval, parse_time
from monitoring.logging_utils import setup_logging
from orchestration.bots import IntervalBot, OrderBookBot, SessionBot
from orchestration.session_timer import SessionTimer
from risk.position_sizer import RiskManager, SizingDecision
from strategy.transports.invest import InvestTransport


logger = logging.getLogger(__name__)


class InvestApp:
    """Wires configuration, the gateway client and the stream into the bots and tools."""

    def __init__(self, client_config: Optional[ClientConfig] = None):
        self.client_config = client_config or load_client_config()
        self.rest = InvestRESTClient(self.client_config)
        self.transport = InvestTransport(self.rest)
        self.storage_cfg = config.section('storage')
        self.monitoring_cfg = config.section('monitoring')

    def stream_factory(self) -> MarketDataStream:
        capacity = int(config.section('stream').get('capacity', 1))
        return MarketDataStream(self.client_config, capacity=capacity)

    def session_timer(self) -> SessionTimer:
        timer_cfg = config.section('timer')
        return SessionTimer(
            self.transport,
            exchange=timer_cfg.get('exchange', 'MOEX'),
            lead=timedelta(minutes=float(timer_cfg.get('lead_minutes', 5))),
            lookahead_windows=int(timer_cfg.get('lookahead_windows', 4)),
        )

    def open_store(self) -> CandleStore:
        return CandleStore(
            self.storage_cfg.get('db_path', 'data/candles.db'),
            history_from=parse_time(self.storage_cfg.get('history_from')),
        )

    @property
    def candle_interval(self) -> CandleInterval:
        return CandleInterval(self.storage_cfg.get('candle_interval', CandleInterval.ONE_MINUTE.value))

    def start_metrics(self) -> None:
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))

    async def close(self) -> None:
        await self.transport.close()

    # Bots ---------------------------------------------------------------
    def orderbook_bot(self) -> OrderBookBot:
        cfg = config.section('orderbook_strategy')
        return OrderBookBot(
            self.client_config, self.transport, self.session_timer(), self.stream_factory,
            list(cfg.get('instruments') or []),
            sell_out=bool(cfg.get('sell_out', True)),
            currency=cfg.get('currency', 'rub'),
            risk=RiskManager(),
            depth=int(cfg.get('depth', 20)),
            buy_ratio=float(cfg.get('buy_ratio', 2.0)),
            sell_ratio=float(cfg.get('sell_ratio', 2.0)),
            required_money=float(cfg.get('required_money', 0)),
        )

    def interval_bot(self, store: CandleStore) -> IntervalBot:
        cfg = config.section('interval_strategy')
        return IntervalBot(
            self.client_config, self.transport, self.session_timer(), self.stream_factory,
            list(cfg.get('instruments') or []),
            sell_out=bool(cfg.get('sell_out', True)),
            currency=cfg.get('currency', 'rub'),
            risk=RiskManager(min_profit_pct=cfg.get('min_profit_pct')),
            store=store,
            analyzer=CorridorAnalyzer(CorridorParams.from_config(cfg)),
            days_to_calculate=int(cfg.get('days_to_calculate_interval', 3)),
            top_n=int(cfg.get('top_instruments_quantity', 10)),
            update_delay_s=float(cfg.get('interval_update_delay_s', 3600)),
        )

    async def run_bot(self, bot: SessionBot) -> None:
        self.start_metrics()
        try:
            await bot.run()
        except asyncio.CancelledError:
            logger.info("%s shutting down on interrupt", bot.name)

    # Tools --------------------------------------------------------------
    async def download(self, instrument_ids: List[str], store: CandleStore) -> Dict[str, int]:
        now = datetime.now(timezone.utc)
        counts = {}
        for uid in instrument_ids:
            counts[uid] = await store.update(uid, self.candle_interval, now, self.transport.get_candles)
        return counts

    async def sized_instruments(self, instrument_ids: List[str]) -> Dict[str, SizingDecision]:
        instruments = await self.transport.instruments_by_uid(instrument_ids)
        last_prices = await self.transport.last_prices(instrument_ids)
        return RiskManager().size_all(instruments, last_prices)

    async def backtest(self, instrument_ids: List[str]) -> None:
        cfg = config.section('backtest')
        interval_cfg = config.section('interval_strategy')
        instruments = await self.sized_instruments(instrument_ids)
        configs = generate_configs(SweepBounds.from_config(cfg))
        optimizer = Optimizer(
            self.storage_cfg.get('db_path', 'data/candles.db'),
            instruments,
            int(interval_cfg.get('top_instruments_quantity', 10)),
            parse_time(cfg.get('init_date')),
            parse_time(cfg.get('stop_date')),
        )
        results = await optimizer.run(configs)
        write_report(results, cfg.get('report_path', 'logs/backtest_report.csv'), int(cfg.get('report_top', 10)))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trading bots for the Invest API")
    parser.add_argument('--log-level', default=None)
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('orderbook', help="run the order book imbalance bot")
    sub.add_parser('interval', help="run the interval bot")
    backtest = sub.add_parser('backtest', help="sweep interval strategy parameters over stored candles")
    backtest.add_argument('--instruments', nargs='*', default=None)
    download = sub.add_parser('download', help="fill the candle store up to now")
    download.add_argument('--instruments', nargs='*', default=None)
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level or config.section('monitoring').get('log_level', 'INFO'))
    app = InvestApp()
    default_ids = list(config.section('interval_strategy').get('instruments') or [])
    try:
        if args.command == 'orderbook':
            await app.run_bot(app.orderbook_bot())
        elif args.command == 'interval':
            with app.open_store() as store:
                await app.run_bot(app.interval_bot(store))
        elif args.command == 'download':
            with app.open_store() as store:
                counts = await app.download(args.instruments or default_ids, store)
            for uid, count in counts.items():
                logger.info("%s: %s candles stored", uid, count)
        elif args.command == 'backtest':
            await app.backtest(args.instruments or default_ids)
    finally:
        await app.close()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    cli()
