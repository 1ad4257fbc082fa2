from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor
from app.config import settings
from app.logging_config import get_logger
from app.models import (
    DiningTable,
    DiscountType,
    Order,
    OrderLine,
    OrderNumberSequence,
    OrderStatus,
    OrderType,
    Restaurant,
    Shift,
    ShiftStatus,
)
from app.services.audit_service import log_audit
from app.services.draft_order import ActiveOrder, DraftOrder, PersistedOrder
from app.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    NotFoundError,
    PreconditionViolation,
    UserFacingError,
)
from app.services.menu_provider import MenuProvider
from app.services.order_math_service import (
    HUNDRED,
    ZERO,
    OrderTotals,
    PricedLine,
    clamp_discount_value,
    compute_subtotal,
    compute_totals,
    round_money,
)
from app.services.provider_factory import get_menu_provider
from app.services.shift_service import get_current_shift
from app.services.unit_of_work import atomic

logger = get_logger(__name__)

ACTIVE_STATUSES = (OrderStatus.OPEN, OrderStatus.HELD)
EMPTY_ORDER_DISCARDED = 'Empty order discarded'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def require_reason(reason: str | None) -> str:
    cleaned = (reason or '').strip()
    if not cleaned:
        raise PreconditionViolation('A reason is required', code='reason_required')
    return cleaned


def assert_order_scope(actor: Actor, order: Order) -> None:
    if order.restaurant_id != actor.restaurant_id or order.branch_id != actor.branch_id:
        raise AccessDenied('Order belongs to another branch', details={'order_id': order.id})


def check_version(order: Order, expected_version: int | None) -> None:
    if expected_version is not None and order.version != expected_version:
        raise ConcurrencyConflict(
            'Order was changed by another cashier; reload and retry',
            details={'order_id': order.id, 'expected_version': expected_version, 'current_version': order.version},
        )


def load_order(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    expected_version: int | None = None,
    for_update: bool = True,
) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = db.execute(stmt).scalar_one_or_none()
    if not order:
        raise NotFoundError('Order not found', details={'order_id': order_id})
    assert_order_scope(actor, order)
    check_version(order, expected_version)
    return order


def load_orders(db: Session, *, actor: Actor, order_ids: Iterable[int]) -> dict[int, Order]:
    """Lock several orders in id order so concurrent multi-order commands cannot deadlock."""
    wanted = sorted(set(order_ids))
    rows = db.execute(
        select(Order)
        .where(Order.id.in_(wanted))
        .order_by(Order.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    found = {row.id: row for row in rows}
    missing = [order_id for order_id in wanted if order_id not in found]
    if missing:
        raise NotFoundError('Order not found', details={'order_ids': missing})
    for order in rows:
        assert_order_scope(actor, order)
    return found


def require_status(order: Order, *allowed: OrderStatus, code: str = 'order_not_open') -> None:
    if order.status not in allowed:
        raise PreconditionViolation(
            f'Order #{order.order_number} is {order.status.value}',
            code=code,
            details={'order_id': order.id, 'status': order.status.value},
        )


def require_open_shift(db: Session, order: Order) -> Shift:
    shift = db.get(Shift, order.shift_id)
    if not shift or shift.status != ShiftStatus.OPEN:
        raise PreconditionViolation(
            'Shift is closed; no further changes are allowed on its orders',
            code='shift_closed',
            details={'order_id': order.id, 'shift_id': order.shift_id},
        )
    return shift


def list_lines(db: Session, order_id: int, *, include_voided: bool = True) -> list[OrderLine]:
    stmt = select(OrderLine).where(OrderLine.order_id == order_id)
    if not include_voided:
        stmt = stmt.where(OrderLine.voided.is_(False))
    return db.execute(stmt.order_by(OrderLine.id.asc())).scalars().all()


def count_active_lines(db: Session, order_id: int) -> int:
    return len(list_lines(db, order_id, include_voided=False))


def get_line(db: Session, *, order: Order, line_id: int) -> OrderLine:
    line = db.execute(
        select(OrderLine).where(OrderLine.id == line_id, OrderLine.order_id == order.id)
    ).scalar_one_or_none()
    if not line:
        raise NotFoundError('Line not found on this order', details={'order_id': order.id, 'line_id': line_id})
    return line


def touch(order: Order) -> None:
    order.updated_at = _now()


def recompute_totals(db: Session, order: Order) -> OrderTotals:
    """Re-derive every monetary field of ``order`` from its current lines and stored discount."""
    db.flush()
    lines = list_lines(db, order.id)
    subtotal = compute_subtotal(
        PricedLine(unit_price=Decimal(line.unit_price), quantity=line.quantity, voided=line.voided) for line in lines
    )
    discount_value = clamp_discount_value(subtotal, order.discount_type, order.discount_value)
    totals = compute_totals(
        subtotal,
        order.discount_type,
        discount_value,
        Decimal(order.service_charge_rate),
        Decimal(order.tax_rate),
    )
    order.subtotal = totals.subtotal
    order.discount_amount = totals.discount_amount
    order.service_charge = totals.service_charge
    order.tax_amount = totals.tax_amount
    order.total = totals.total
    touch(order)
    db.flush()
    return totals


def next_order_number(db: Session, *, restaurant_id: int) -> int:
    sequence = db.execute(
        select(OrderNumberSequence)
        .where(OrderNumberSequence.restaurant_id == restaurant_id)
        .with_for_update()
    ).scalar_one_or_none()
    if not sequence:
        sequence = OrderNumberSequence(restaurant_id=restaurant_id, last_number=0)
        db.add(sequence)
    sequence.last_number += 1
    db.flush()
    return sequence.last_number


def current_shift_for(db: Session, actor: Actor) -> Shift:
    shift = get_current_shift(db, actor=actor)
    if not shift:
        raise PreconditionViolation('Open a shift first', code='no_open_shift')
    return shift


def create_order(db: Session, *, actor: Actor, draft: DraftOrder) -> Order:
    shift = current_shift_for(db, actor)
    restaurant = db.get(Restaurant, actor.restaurant_id)
    if not restaurant:
        raise NotFoundError('Restaurant not found', details={'restaurant_id': actor.restaurant_id})

    if draft.order_type == OrderType.DINE_IN:
        table = db.get(DiningTable, draft.table_id)
        if not table or table.branch_id != actor.branch_id or not table.active:
            raise NotFoundError('Table not found', details={'table_id': draft.table_id})

    now = _now()
    order = Order(
        restaurant_id=actor.restaurant_id,
        branch_id=actor.branch_id,
        shift_id=shift.id,
        order_number=next_order_number(db, restaurant_id=actor.restaurant_id),
        order_type=draft.order_type,
        table_id=draft.table_id,
        status=OrderStatus.OPEN,
        tax_rate=restaurant.tax_rate if restaurant.tax_rate is not None else settings.default_tax_rate,
        service_charge_rate=(
            restaurant.service_charge_rate
            if restaurant.service_charge_rate is not None
            else settings.default_service_charge_rate
        ),
        subtotal=ZERO,
        discount_amount=ZERO,
        service_charge=ZERO,
        tax_amount=ZERO,
        total=ZERO,
        notes=draft.notes,
        customer_name=draft.customer_name,
        customer_phone=draft.customer_phone,
        created_by_cashier_id=actor.cashier_id,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.flush()
    logger.info('Order created', extra={'order_id': order.id, 'order_number': order.order_number, 'shift_id': shift.id})
    log_audit(
        db,
        actor=actor,
        action='ORDER_CREATED',
        entity_type='order',
        entity_id=order.id,
        metadata={'order_number': order.order_number, 'order_type': order.order_type.value, 'table_id': order.table_id},
    )
    return order


def _priced_modifiers(menu_item, modifier_ids: Iterable[int]) -> tuple[Decimal, list[dict]]:
    adjustments = ZERO
    snapshot = []
    for modifier_id in modifier_ids:
        option = menu_item.modifier(modifier_id)
        adjustments += option.price_adjustment
        snapshot.append(
            {
                'id': option.id,
                'group': option.group_name,
                'name': option.name,
                'price_adjustment': str(round_money(option.price_adjustment)),
            }
        )
    return adjustments, snapshot


def add_line(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    menu_item_id: int,
    quantity: int = 1,
    modifier_ids: Iterable[int] = (),
    notes: str | None = None,
    expected_version: int | None = None,
    menu_provider: MenuProvider | None = None,
) -> OrderLine:
    if quantity < 1:
        raise UserFacingError('Quantity must be at least 1', code='invalid_quantity')
    provider = menu_provider or get_menu_provider()

    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)

        menu_item = provider.get_menu_item(db, restaurant_id=order.restaurant_id, menu_item_id=menu_item_id)
        adjustments, modifiers = _priced_modifiers(menu_item, modifier_ids)
        line = OrderLine(
            order_id=order.id,
            menu_item_id=menu_item.id,
            name=menu_item.name,
            unit_price=round_money(menu_item.base_price + adjustments),
            quantity=quantity,
            modifiers=modifiers,
            notes=(notes or '').strip() or None,
            voided=False,
            created_at=_now(),
        )
        db.add(line)
        recompute_totals(db, order)

    logger.info('Line added', extra={'order_id': order.id, 'line_id': line.id, 'menu_item_id': menu_item.id})
    return line


def commit_item(
    db: Session,
    *,
    actor: Actor,
    active: ActiveOrder,
    menu_item_id: int,
    quantity: int = 1,
    modifier_ids: Iterable[int] = (),
    notes: str | None = None,
    expected_version: int | None = None,
    menu_provider: MenuProvider | None = None,
) -> tuple[Order, OrderLine]:
    """Attach an item to the active order, materializing a draft on its first item."""
    with atomic(db):
        if isinstance(active, DraftOrder):
            # Reject a bad menu item before the draft turns into an order.
            (menu_provider or get_menu_provider()).get_menu_item(
                db, restaurant_id=actor.restaurant_id, menu_item_id=menu_item_id
            )
            order_id = create_order(db, actor=actor, draft=active).id
            expected_version = None
        else:
            order_id = active.order_id
        line = add_line(
            db,
            actor=actor,
            order_id=order_id,
            menu_item_id=menu_item_id,
            quantity=quantity,
            modifier_ids=modifier_ids,
            notes=notes,
            expected_version=expected_version,
            menu_provider=menu_provider,
        )
    return db.get(Order, order_id), line


def _editable_line(db: Session, *, order: Order, line_id: int) -> OrderLine:
    line = get_line(db, order=order, line_id=line_id)
    if line.voided:
        raise PreconditionViolation('Line is voided', code='line_voided', details={'line_id': line.id})
    return line


def update_line_quantity(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    line_id: int,
    quantity: int,
    expected_version: int | None = None,
) -> OrderLine:
    if quantity < 1:
        raise UserFacingError('Quantity must be at least 1', code='invalid_quantity')

    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        line = _editable_line(db, order=order, line_id=line_id)
        if line.kitchen_sent_at is not None:
            raise PreconditionViolation(
                'Line was already sent to the kitchen; void it instead',
                code='line_sent_to_kitchen',
                details={'line_id': line.id},
            )
        line.quantity = quantity
        recompute_totals(db, order)
    return line


def update_line_notes(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    line_id: int,
    notes: str | None,
    expected_version: int | None = None,
) -> OrderLine:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        line = _editable_line(db, order=order, line_id=line_id)
        line.notes = (notes or '').strip() or None
        touch(order)
        db.flush()
    return line


def void_line(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    line_id: int,
    reason: str,
    expected_version: int | None = None,
) -> OrderLine:
    reason = require_reason(reason)
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        line = _editable_line(db, order=order, line_id=line_id)
        line.voided = True
        line.void_reason = reason
        line.voided_at = _now()
        recompute_totals(db, order)

    logger.info('Line voided', extra={'order_id': order.id, 'line_id': line.id})
    log_audit(
        db,
        actor=actor,
        action='LINE_VOIDED',
        entity_type='order',
        entity_id=order.id,
        metadata={'line_id': line.id, 'reason': reason, 'total': str(order.total)},
    )
    return line


def set_discount(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    discount_type: DiscountType,
    value: Decimal,
    expected_version: int | None = None,
) -> Order:
    value = Decimal(value)
    if value <= 0:
        raise UserFacingError('Discount must be greater than zero', code='invalid_amount')

    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        limit = HUNDRED if discount_type == DiscountType.PERCENT else Decimal(order.subtotal)
        if value > limit:
            raise UserFacingError(
                'Discount exceeds the order subtotal',
                code='discount_exceeds_subtotal',
                details={'subtotal': str(order.subtotal), 'value': str(value), 'type': discount_type.value},
            )
        order.discount_type = discount_type
        order.discount_value = value if discount_type == DiscountType.PERCENT else round_money(value)
        recompute_totals(db, order)

    log_audit(
        db,
        actor=actor,
        action='DISCOUNT_SET',
        entity_type='order',
        entity_id=order.id,
        metadata={'type': discount_type.value, 'value': str(value), 'discount_amount': str(order.discount_amount)},
    )
    return order


def clear_discount(db: Session, *, actor: Actor, order_id: int, expected_version: int | None = None) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        order.discount_type = None
        order.discount_value = None
        recompute_totals(db, order)

    log_audit(db, actor=actor, action='DISCOUNT_CLEARED', entity_type='order', entity_id=order.id)
    return order


def hold_order(db: Session, *, actor: Actor, order_id: int, expected_version: int | None = None) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.OPEN)
        require_open_shift(db, order)
        if count_active_lines(db, order.id) == 0:
            raise PreconditionViolation('Cannot hold an order without items', code='order_empty', details={'order_id': order.id})
        order.status = OrderStatus.HELD
        touch(order)
        db.flush()

    logger.info('Order held', extra={'order_id': order.id, 'shift_id': order.shift_id})
    log_audit(db, actor=actor, action='ORDER_HELD', entity_type='order', entity_id=order.id)
    return order


def resume_order(db: Session, *, actor: Actor, order_id: int, expected_version: int | None = None) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, OrderStatus.HELD, code='order_not_held')
        require_open_shift(db, order)
        order.status = OrderStatus.OPEN
        touch(order)
        db.flush()

    logger.info('Order resumed', extra={'order_id': order.id})
    log_audit(db, actor=actor, action='ORDER_RESUMED', entity_type='order', entity_id=order.id)
    return order


def cancel_order(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    reason: str,
    expected_version: int | None = None,
) -> Order:
    reason = require_reason(reason)
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        require_status(order, *ACTIVE_STATUSES, code='order_not_cancellable')
        order.status = OrderStatus.CANCELLED
        order.cancelled_reason = reason
        touch(order)
        db.flush()

    logger.info('Order cancelled', extra={'order_id': order.id, 'reason': reason})
    log_audit(db, actor=actor, action='ORDER_CANCELLED', entity_type='order', entity_id=order.id, metadata={'reason': reason})
    return order


def void_order(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    reason: str,
    expected_version: int | None = None,
) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
        if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
            raise PreconditionViolation(
                'Paid orders are reversed through a refund, not a void',
                code='void_requires_refund',
                details={'order_id': order.id},
            )
        require_status(order, OrderStatus.OPEN)
        reason = require_reason(reason)
        require_open_shift(db, order)
        order.status = OrderStatus.VOIDED
        order.voided_reason = reason
        touch(order)
        db.flush()

    logger.info('Order voided', extra={'order_id': order.id, 'total': str(order.total)})
    log_audit(
        db,
        actor=actor,
        action='ORDER_VOIDED',
        entity_type='order',
        entity_id=order.id,
        metadata={'reason': reason, 'total': str(order.total)},
    )
    return order


def park_current_order(db: Session, *, actor: Actor, current: ActiveOrder | None, discard_reason: str) -> Order | None:
    """Hold the cashier's current open order, or cancel it when it has no items."""
    if not isinstance(current, PersistedOrder):
        return None
    order = load_order(db, actor=actor, order_id=current.order_id)
    if order.status != OrderStatus.OPEN:
        return None
    if count_active_lines(db, order.id) > 0:
        return hold_order(db, actor=actor, order_id=order.id)
    return cancel_order(db, actor=actor, order_id=order.id, reason=discard_reason)


def start_new_order(
    db: Session,
    *,
    actor: Actor,
    current: ActiveOrder | None,
    order_type: OrderType = OrderType.TAKEAWAY,
    table_id: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
) -> tuple[DraftOrder, Order | None]:
    draft = DraftOrder(
        order_type=order_type,
        table_id=table_id,
        customer_name=customer_name,
        customer_phone=customer_phone,
    )
    with atomic(db):
        parked = park_current_order(db, actor=actor, current=current, discard_reason=EMPTY_ORDER_DISCARDED)
    return draft, parked


def transfer_line(
    db: Session,
    *,
    actor: Actor,
    source_order_id: int,
    line_id: int,
    target_order_id: int,
) -> tuple[Order, Order]:
    if source_order_id == target_order_id:
        raise PreconditionViolation('Source and target order are the same', code='transfer_same_order')

    with atomic(db):
        orders = load_orders(db, actor=actor, order_ids=[source_order_id, target_order_id])
        source = orders[source_order_id]
        target = orders[target_order_id]
        require_status(source, OrderStatus.OPEN)
        require_status(target, OrderStatus.OPEN)
        require_open_shift(db, source)
        require_open_shift(db, target)
        line = _editable_line(db, order=source, line_id=line_id)
        if count_active_lines(db, source.id) < 2:
            raise PreconditionViolation(
                'The last remaining line cannot be transferred',
                code='last_line_transfer',
                details={'order_id': source.id, 'line_id': line.id},
            )
        line.order_id = target.id
        recompute_totals(db, source)
        recompute_totals(db, target)

    logger.info('Line transferred', extra={'line_id': line_id, 'from_order_id': source.id, 'to_order_id': target.id})
    log_audit(
        db,
        actor=actor,
        action='LINE_TRANSFERRED',
        entity_type='order',
        entity_id=source.id,
        metadata={'line_id': line_id, 'target_order_id': target.id},
    )
    return source, target


def get_order(db: Session, *, actor: Actor, order_id: int) -> Order:
    return load_order(db, actor=actor, order_id=order_id, for_update=False)


def list_orders(
    db: Session,
    *,
    branch_id: int,
    statuses: Iterable[OrderStatus] = ACTIVE_STATUSES,
    shift_id: int | None = None,
    table_id: int | None = None,
) -> list[Order]:
    stmt = select(Order).where(Order.branch_id == branch_id, Order.status.in_(list(statuses)))
    if shift_id is not None:
        stmt = stmt.where(Order.shift_id == shift_id)
    if table_id is not None:
        stmt = stmt.where(Order.table_id == table_id)
    return db.execute(stmt.order_by(Order.order_number.asc())).scalars().all()


def _money(value) -> str:
    return str(round_money(value if value is not None else ZERO))


def order_snapshot(db: Session, order: Order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'version': order.version,
        'status': order.status.value,
        'order_type': order.order_type.value,
        'table_id': order.table_id,
        'shift_id': order.shift_id,
        'customer_name': order.customer_name,
        'customer_phone': order.customer_phone,
        'notes': order.notes,
        'discount': (
            {'type': order.discount_type.value, 'value': str(order.discount_value)} if order.discount_type else None
        ),
        'subtotal': _money(order.subtotal),
        'discount_amount': _money(order.discount_amount),
        'service_charge': _money(order.service_charge),
        'tax_amount': _money(order.tax_amount),
        'total': _money(order.total),
        'merged_into_order_id': order.merged_into_order_id,
        'split_from_order_id': order.split_from_order_id,
        'created_at': as_utc(order.created_at).isoformat() if order.created_at else None,
        'paid_at': as_utc(order.paid_at).isoformat() if order.paid_at else None,
        'lines': [
            {
                'id': line.id,
                'menu_item_id': line.menu_item_id,
                'name': line.name,
                'unit_price': _money(line.unit_price),
                'quantity': line.quantity,
                'modifiers': line.modifiers or [],
                'notes': line.notes,
                'voided': line.voided,
                'void_reason': line.void_reason,
                'sent_to_kitchen': line.kitchen_sent_at is not None,
            }
            for line in list_lines(db, order.id)
        ],
    }
