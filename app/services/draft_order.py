"""
Tagged variant for the cashier's current order.

A ``DraftOrder`` is the intent to start an order (type, table, customer) before any
line is committed; nothing is written for it. The first committed line turns it into
a ``PersistedOrder`` that only carries the stored order id, so draft-only fields never
leak into a persisted order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from app.models import OrderType
from app.services.errors import UserFacingError


@dataclass(frozen=True)
class DraftOrder:
    order_type: OrderType = OrderType.TAKEAWAY
    table_id: int | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.order_type == OrderType.DINE_IN and self.table_id is None:
            raise UserFacingError('Dine-in orders need a table', code='table_required')
        if self.order_type == OrderType.TAKEAWAY and self.table_id is not None:
            raise UserFacingError('Takeaway orders cannot reference a table', code='table_not_allowed')


@dataclass(frozen=True)
class PersistedOrder:
    order_id: int


ActiveOrder = Union[DraftOrder, PersistedOrder]
