from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from market.price import Price, ZERO


class OrderDirection(str, Enum):
    BUY = 'ORDER_DIRECTION_BUY'
    SELL = 'ORDER_DIRECTION_SELL'


class OrderType(str, Enum):
    MARKET = 'ORDER_TYPE_MARKET'
    LIMIT = 'ORDER_TYPE_LIMIT'


class ExecutionStatus(str, Enum):
    UNSPECIFIED = 'EXECUTION_REPORT_STATUS_UNSPECIFIED'
    FILL = 'EXECUTION_REPORT_STATUS_FILL'
    REJECTED = 'EXECUTION_REPORT_STATUS_REJECTED'
    CANCELLED = 'EXECUTION_REPORT_STATUS_CANCELLED'
    NEW = 'EXECUTION_REPORT_STATUS_NEW'
    PARTIALLY_FILLED = 'EXECUTION_REPORT_STATUS_PARTIALLYFILL'

    @classmethod
    def parse(cls, value: Optional[str]) -> 'ExecutionStatus':
        try:
            return cls(value)
        except ValueError:
            return cls.UNSPECIFIED

    @property
    def is_filled(self) -> bool:
        # a partial fill counts as a fill for position state
        return self in (ExecutionStatus.FILL, ExecutionStatus.PARTIALLY_FILLED)


@dataclass
class OrderReport:
    """Normalized view of an order acknowledgement or order state."""

    order_id: str
    instrument_uid: str
    direction: OrderDirection
    status: ExecutionStatus
    lots_requested: int = 0
    lots_executed: int = 0
    executed_price: Price = ZERO
    client_order_id: Optional[str] = None
    message: str = ''
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def filled(self) -> bool:
        return self.status.is_filled

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'order_id': self.order_id,
            'instrument_uid': self.instrument_uid,
            'direction': self.direction.value,
            'status': self.status.value,
            'lots_requested': self.lots_requested,
            'lots_executed': self.lots_executed,
            'executed_price': str(self.executed_price),
            'client_order_id': self.client_order_id,
            'message': self.message,
        }
        if self.raw:
            data['raw'] = self.raw
        return data
