"""
Table coordination: derived occupancy, table clicks, merge, split and move.

Table status is never stored. It is read off the index of active orders
(``table_id -> [orders]``), rebuilt from the current order set on every query.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor
from app.logging_config import get_logger
from app.models import DiningTable, Order, OrderLine, OrderStatus, OrderType
from app.services.audit_service import log_audit
from app.services.draft_order import ActiveOrder, DraftOrder
from app.services.errors import NotFoundError, PreconditionViolation, UserFacingError
from app.services.order_math_service import ZERO
from app.services.order_service import (
    ACTIVE_STATUSES,
    as_utc,
    get_line,
    list_orders,
    load_order,
    load_orders,
    next_order_number,
    park_current_order,
    recompute_totals,
    require_open_shift,
    require_status,
    touch,
)
from app.services.unit_of_work import TransactionalCommand, atomic

logger = get_logger(__name__)

FREE = 'free'
ACTIVE = 'active'
HELD = 'held'
EMPTY_ORDER_DISCARDED_ON_SWITCH = 'Empty order discarded on table switch'
MERGED_REASON = 'Merged into order #{number}'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class TableState:
    table: DiningTable
    status: str
    orders: list[Order] = field(default_factory=list)


@dataclass(frozen=True)
class TableClick:
    """Either a list of candidate orders to choose from, or a fresh draft for a free table."""

    table_id: int
    candidates: list[Order] = field(default_factory=list)
    draft: DraftOrder | None = None
    parked_order: Order | None = None


def build_table_index(orders: Iterable[Order]) -> dict[int, list[Order]]:
    index: dict[int, list[Order]] = defaultdict(list)
    for order in orders:
        if order.table_id is not None and order.status in ACTIVE_STATUSES:
            index[order.table_id].append(order)
    for table_orders in index.values():
        table_orders.sort(key=lambda order: order.order_number)
    return dict(index)


def derive_table_status(orders: Sequence[Order]) -> str:
    if not orders:
        return FREE
    if any(order.status == OrderStatus.OPEN for order in orders):
        return ACTIVE
    return HELD


def _branch_tables(db: Session, branch_id: int) -> list[DiningTable]:
    return db.execute(
        select(DiningTable)
        .where(DiningTable.branch_id == branch_id, DiningTable.active.is_(True))
        .order_by(DiningTable.position.asc(), DiningTable.id.asc())
    ).scalars().all()


def _get_table(db: Session, *, actor: Actor, table_id: int) -> DiningTable:
    table = db.get(DiningTable, table_id)
    if not table or table.branch_id != actor.branch_id or not table.active:
        raise NotFoundError('Table not found', details={'table_id': table_id})
    return table


def table_board(db: Session, *, actor: Actor) -> list[TableState]:
    index = build_table_index(list_orders(db, branch_id=actor.branch_id))
    board = []
    for table in _branch_tables(db, actor.branch_id):
        orders = index.get(table.id, [])
        board.append(TableState(table=table, status=derive_table_status(orders), orders=orders))
    return board


def orders_on_table(db: Session, *, branch_id: int, table_id: int) -> list[Order]:
    return build_table_index(list_orders(db, branch_id=branch_id, table_id=table_id)).get(table_id, [])


def resolve_table_click(
    db: Session,
    *,
    actor: Actor,
    table_id: int,
    current: ActiveOrder | None = None,
) -> TableClick:
    """Occupied tables list their orders for the cashier to pick; free tables start a dine-in draft."""
    _get_table(db, actor=actor, table_id=table_id)
    candidates = orders_on_table(db, branch_id=actor.branch_id, table_id=table_id)
    if candidates:
        return TableClick(table_id=table_id, candidates=candidates)

    with atomic(db):
        parked = park_current_order(db, actor=actor, current=current, discard_reason=EMPTY_ORDER_DISCARDED_ON_SWITCH)
    if parked:
        logger.info('Current order parked on table switch', extra={'order_id': parked.id, 'status': parked.status.value})
    return TableClick(
        table_id=table_id,
        draft=DraftOrder(order_type=OrderType.DINE_IN, table_id=table_id),
        parked_order=parked,
    )


def _primary_first(first: Order, second: Order) -> tuple[Order, Order]:
    def key(order: Order):
        return (as_utc(order.created_at), order.order_number)

    return (first, second) if key(first) <= key(second) else (second, first)


class MergeOrders(TransactionalCommand[Order]):
    """Fold the later of two table orders into the earlier one."""

    action = 'ORDER_MERGE'

    def __init__(self, *, actor: Actor, order_id: int, other_order_id: int):
        self.actor = actor
        self.order_id = order_id
        self.other_order_id = other_order_id

    def validate(self, db: Session) -> None:
        if self.order_id == self.other_order_id:
            raise PreconditionViolation('Cannot merge an order with itself', code='merge_same_order')
        orders = load_orders(db, actor=self.actor, order_ids=[self.order_id, self.other_order_id])
        for order in orders.values():
            if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
                raise PreconditionViolation(
                    f'Order #{order.order_number} is paid and cannot be merged',
                    code='merge_paid_order',
                    details={'order_id': order.id},
                )
            require_status(order, *ACTIVE_STATUSES, code='order_not_open')
            require_open_shift(db, order)
        self.primary, self.secondary = _primary_first(orders[self.order_id], orders[self.other_order_id])
        if self.primary.table_id is None or self.secondary.table_id is None:
            raise PreconditionViolation('Only table orders can be merged', code='merge_requires_tables')
        if self.primary.table_id == self.secondary.table_id:
            raise PreconditionViolation(
                'Both orders are on the same table',
                code='merge_same_table',
                details={'table_id': self.primary.table_id},
            )

    def apply(self, db: Session) -> Order:
        lines = db.execute(select(OrderLine).where(OrderLine.order_id == self.secondary.id)).scalars().all()
        for line in lines:
            line.order_id = self.primary.id
        self.secondary.status = OrderStatus.CANCELLED
        self.secondary.cancelled_reason = MERGED_REASON.format(number=self.primary.order_number)
        self.secondary.merged_into_order_id = self.primary.id
        recompute_totals(db, self.primary)
        recompute_totals(db, self.secondary)
        return self.primary


def merge_orders(db: Session, *, actor: Actor, order_id: int, other_order_id: int) -> tuple[Order, Order]:
    command = MergeOrders(actor=actor, order_id=order_id, other_order_id=other_order_id)
    primary = command.execute(db)
    secondary = command.secondary
    logger.info('Orders merged', extra={'primary_order_id': primary.id, 'secondary_order_id': secondary.id})
    log_audit(
        db,
        actor=actor,
        action='ORDER_MERGED',
        entity_type='order',
        entity_id=primary.id,
        metadata={'secondary_order_id': secondary.id, 'freed_table_id': secondary.table_id, 'total': str(primary.total)},
    )
    return primary, secondary


@dataclass(frozen=True)
class SplitSlice:
    line_id: int
    quantity: int


class SplitOrder(TransactionalCommand[Order]):
    """Move the given (line, quantity) slices of an order onto a new order on the same shift."""

    action = 'ORDER_SPLIT'

    def __init__(self, *, actor: Actor, order_id: int, slices: Sequence[SplitSlice]):
        self.actor = actor
        self.order_id = order_id
        self.slices = list(slices)

    def validate(self, db: Session) -> None:
        if not self.slices:
            raise UserFacingError('Choose at least one item to split', code='invalid_quantity')
        self.source = load_order(db, actor=self.actor, order_id=self.order_id)
        require_status(self.source, *ACTIVE_STATUSES, code='order_not_open')
        require_open_shift(db, self.source)

        requested: dict[int, int] = defaultdict(int)
        for item in self.slices:
            if item.quantity < 1:
                raise UserFacingError('Split quantity must be at least 1', code='invalid_quantity')
            requested[item.line_id] += item.quantity

        self.lines: dict[int, OrderLine] = {}
        for line_id, quantity in requested.items():
            line = get_line(db, order=self.source, line_id=line_id)
            if line.voided:
                raise PreconditionViolation('Voided lines cannot be split', code='line_voided', details={'line_id': line_id})
            if quantity > line.quantity:
                raise UserFacingError(
                    'Split quantity exceeds the line quantity',
                    code='invalid_quantity',
                    details={'line_id': line_id, 'available': line.quantity, 'requested': quantity},
                )
            self.lines[line_id] = line
        self.requested = dict(requested)

        remaining_units = sum(
            line.quantity
            for line in db.execute(
                select(OrderLine).where(OrderLine.order_id == self.source.id, OrderLine.voided.is_(False))
            ).scalars()
        ) - sum(self.requested.values())
        if remaining_units <= 0:
            raise PreconditionViolation(
                'Splitting every item would leave the original order empty',
                code='split_leaves_empty_order',
                details={'order_id': self.source.id},
            )

    def apply(self, db: Session) -> Order:
        now = _now()
        source = self.source
        new_order = Order(
            restaurant_id=source.restaurant_id,
            branch_id=source.branch_id,
            shift_id=source.shift_id,
            order_number=next_order_number(db, restaurant_id=source.restaurant_id),
            order_type=source.order_type,
            table_id=source.table_id,
            status=OrderStatus.OPEN,
            tax_rate=source.tax_rate,
            service_charge_rate=source.service_charge_rate,
            subtotal=ZERO,
            discount_amount=ZERO,
            service_charge=ZERO,
            tax_amount=ZERO,
            total=ZERO,
            customer_name=source.customer_name,
            customer_phone=source.customer_phone,
            split_from_order_id=source.id,
            created_by_cashier_id=self.actor.cashier_id,
            created_at=now,
            updated_at=now,
        )
        db.add(new_order)
        db.flush()

        for line_id, quantity in self.requested.items():
            line = self.lines[line_id]
            if quantity == line.quantity:
                line.order_id = new_order.id
                continue
            line.quantity -= quantity
            db.add(
                OrderLine(
                    order_id=new_order.id,
                    menu_item_id=line.menu_item_id,
                    name=line.name,
                    unit_price=line.unit_price,
                    quantity=quantity,
                    modifiers=list(line.modifiers or []),
                    notes=line.notes,
                    voided=False,
                    kitchen_sent_at=line.kitchen_sent_at,
                    created_at=now,
                )
            )
        recompute_totals(db, source)
        recompute_totals(db, new_order)
        return new_order


def split_order(db: Session, *, actor: Actor, order_id: int, slices: Sequence[SplitSlice]) -> tuple[Order, Order]:
    command = SplitOrder(actor=actor, order_id=order_id, slices=slices)
    new_order = command.execute(db)
    logger.info('Order split', extra={'order_id': order_id, 'new_order_id': new_order.id})
    log_audit(
        db,
        actor=actor,
        action='ORDER_SPLIT',
        entity_type='order',
        entity_id=order_id,
        metadata={
            'new_order_id': new_order.id,
            'slices': [{'line_id': item.line_id, 'quantity': item.quantity} for item in slices],
        },
    )
    return command.source, new_order


def move_order_to_table(db: Session, *, actor: Actor, order_id: int, table_id: int) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id)
        require_status(order, *ACTIVE_STATUSES, code='order_not_movable')
        require_open_shift(db, order)
        _get_table(db, actor=actor, table_id=table_id)
        if order.table_id == table_id:
            raise PreconditionViolation('Order is already on this table', code='order_already_on_table')
        occupants = orders_on_table(db, branch_id=actor.branch_id, table_id=table_id)
        if occupants:
            raise PreconditionViolation(
                'Destination table is occupied',
                code='table_occupied',
                details={'table_id': table_id, 'order_ids': [occupant.id for occupant in occupants]},
            )
        previous_table_id = order.table_id
        order.table_id = table_id
        order.order_type = OrderType.DINE_IN
        touch(order)
        db.flush()

    logger.info('Order moved', extra={'order_id': order.id, 'from_table_id': previous_table_id, 'to_table_id': table_id})
    log_audit(
        db,
        actor=actor,
        action='ORDER_MOVED',
        entity_type='order',
        entity_id=order.id,
        metadata={'from_table_id': previous_table_id, 'to_table_id': table_id},
    )
    return order
