from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
import logging

from config import config
from market.models import Instrument
from market.price import Price


logger = logging.getLogger(__name__)


@dataclass
class SizingDecision:
    instrument: Instrument
    quantity: int
    notional: Price


class RiskManager:
    """Position sizing from a preferred notional plus profit and stop-loss thresholds."""

    def __init__(self, min_profit_pct: Optional[float] = None, stop_loss_pct: Optional[float] = None,
                 preferred_notional: Optional[float] = None, max_notional: Optional[float] = None):
        executor_cfg = config.section('executor')
        self.min_profit_pct = float(min_profit_pct if min_profit_pct is not None
                                    else executor_cfg.get('min_profit_pct', 0.5))
        self.stop_loss_pct = float(stop_loss_pct if stop_loss_pct is not None
                                   else executor_cfg.get('stop_loss_pct', 1.0))
        preferred = preferred_notional if preferred_notional is not None else executor_cfg.get('preferred_notional', 0)
        maximum = max_notional if max_notional is not None else executor_cfg.get('max_notional', 0)
        self.preferred_notional = Price.from_decimal(Decimal(str(preferred or 0)))
        self.max_notional = Price.from_decimal(Decimal(str(maximum or 0)))

    def size(self, instrument: Instrument, last_price: Price) -> Optional[SizingDecision]:
        """Lots to trade for one instrument, or None when one lot already exceeds the maximum."""
        lot_cost = last_price * instrument.lot
        if self.max_notional and lot_cost > self.max_notional:
            logger.info(
                "%s dropped: lot cost %s exceeds max notional %s",
                instrument.ticker or instrument.uid, lot_cost, self.max_notional,
            )
            return None
        quantity = 1
        if lot_cost and lot_cost < self.preferred_notional:
            quantity = int(self.preferred_notional.to_decimal() // lot_cost.to_decimal())
        return SizingDecision(instrument, quantity, lot_cost * quantity)

    def size_all(self, instruments: Dict[str, Instrument],
                 last_prices: Dict[str, Price]) -> Dict[str, SizingDecision]:
        decisions = {}
        for uid, instrument in instruments.items():
            price = last_prices.get(uid)
            if price is None:
                logger.warning("%s dropped: no last price for sizing", instrument.ticker or uid)
                continue
            decision = self.size(instrument, price)
            if decision is not None:
                decisions[uid] = decision
        return decisions

    @staticmethod
    def profit_pct(entry_price: Price, last_price: Price) -> float:
        entry = entry_price.to_float()
        if entry == 0:
            return 0.0
        return (last_price.to_float() - entry) / entry * 100

    def is_profitable(self, entry_price: Price, last_price: Price) -> bool:
        return self.profit_pct(entry_price, last_price) > self.min_profit_pct

    @staticmethod
    def stop_loss_triggered(entry_price: Price, last_price: Price, stop_loss_pct: float) -> bool:
        entry = entry_price.to_float()
        if entry == 0 or stop_loss_pct <= 0:
            return False
        return (entry - last_price.to_float()) / entry * 100 >= stop_loss_pct
