from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor
from app.logging_config import get_logger
from app.models import CashMovement, CashMovementType, Order, OrderStatus, Payment, Refund, Shift, ShiftStatus
from app.services.audit_service import log_audit
from app.services.errors import AccessDenied, NotFoundError, PreconditionViolation, UserFacingError
from app.services.order_math_service import ZERO, allocate_proportionally, round_money
from app.services.unit_of_work import atomic

logger = get_logger(__name__)

CASH = 'cash'
CARD = 'card'
MOBILE = 'mobile'
BUCKETS = (CASH, CARD, MOBILE)
CARD_METHODS = {'visa', 'mastercard', 'card'}
SETTLED_STATUSES = (OrderStatus.PAID, OrderStatus.REFUNDED)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def payment_bucket(method: str) -> str:
    method = method.strip().lower()
    if method == CASH:
        return CASH
    if method in CARD_METHODS:
        return CARD
    return MOBILE


@dataclass(frozen=True)
class OpenShiftResult:
    shift: Shift
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ZReport:
    shift_id: int
    status: str
    opening_cash: Decimal
    gross_sales: Decimal
    discounts: Decimal
    net_sales: Decimal
    service_charge: Decimal
    tax: Decimal
    total_sales: Decimal
    payments: dict[str, Decimal]
    refunds: dict[str, Decimal]
    refunds_total: Decimal
    net_payments: dict[str, Decimal]
    cash_in: Decimal
    cash_out: Decimal
    expected_cash: Decimal
    closing_cash: Decimal | None
    variance: Decimal | None
    paid_orders: int
    cancelled_orders: int
    voided_orders: int
    held_orders: int
    refund_count: int

    def as_dict(self) -> dict:
        def money(value):
            return str(value) if value is not None else None

        return {
            'shift_id': self.shift_id,
            'status': self.status,
            'opening_cash': money(self.opening_cash),
            'gross_sales': money(self.gross_sales),
            'discounts': money(self.discounts),
            'net_sales': money(self.net_sales),
            'service_charge': money(self.service_charge),
            'tax': money(self.tax),
            'total_sales': money(self.total_sales),
            'payments': {key: money(value) for key, value in self.payments.items()},
            'refunds': {key: money(value) for key, value in self.refunds.items()},
            'refunds_total': money(self.refunds_total),
            'net_payments': {key: money(value) for key, value in self.net_payments.items()},
            'cash_in': money(self.cash_in),
            'cash_out': money(self.cash_out),
            'expected_cash': money(self.expected_cash),
            'closing_cash': money(self.closing_cash),
            'variance': money(self.variance),
            'counts': {
                'paid': self.paid_orders,
                'cancelled': self.cancelled_orders,
                'voided': self.voided_orders,
                'held': self.held_orders,
                'refunds': self.refund_count,
            },
        }


def get_current_shift(db: Session, *, actor: Actor) -> Shift | None:
    return db.execute(
        select(Shift)
        .where(
            Shift.cashier_id == actor.cashier_id,
            Shift.branch_id == actor.branch_id,
            Shift.status == ShiftStatus.OPEN,
        )
        .order_by(Shift.opened_at.desc(), Shift.id.desc())
    ).scalars().first()


def load_shift(db: Session, *, actor: Actor, shift_id: int, for_update: bool = True) -> Shift:
    stmt = select(Shift).where(Shift.id == shift_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    shift = db.execute(stmt).scalar_one_or_none()
    if not shift:
        raise NotFoundError('Shift not found', details={'shift_id': shift_id})
    if shift.restaurant_id != actor.restaurant_id or shift.branch_id != actor.branch_id:
        raise AccessDenied('Shift belongs to another branch', details={'shift_id': shift_id})
    return shift


def _require_open(shift: Shift) -> None:
    if shift.status != ShiftStatus.OPEN:
        raise PreconditionViolation('Shift is closed', code='shift_closed', details={'shift_id': shift.id})


def open_shift(db: Session, *, actor: Actor, opening_cash: Decimal) -> OpenShiftResult:
    opening_cash = Decimal(opening_cash)
    if opening_cash < 0:
        raise UserFacingError('Opening cash cannot be negative', code='invalid_amount')

    with atomic(db):
        if get_current_shift(db, actor=actor):
            raise PreconditionViolation('You already have an open shift at this branch', code='shift_already_open')

        others = db.execute(
            select(Shift).where(
                Shift.branch_id == actor.branch_id,
                Shift.status == ShiftStatus.OPEN,
                Shift.cashier_id != actor.cashier_id,
            )
        ).scalars().all()
        warnings = []
        if others:
            warnings.append(f'{len(others)} other cashier shift(s) already open at this branch')
            logger.warning(
                'Another cashier already has an open shift at this branch',
                extra={'branch_id': actor.branch_id, 'cashier_ids': [other.cashier_id for other in others]},
            )

        shift = Shift(
            restaurant_id=actor.restaurant_id,
            branch_id=actor.branch_id,
            cashier_id=actor.cashier_id,
            status=ShiftStatus.OPEN,
            opening_cash=round_money(opening_cash),
            opened_at=_now(),
        )
        db.add(shift)
        db.flush()

    logger.info('Shift opened', extra={'shift_id': shift.id, 'cashier_id': actor.cashier_id})
    log_audit(
        db,
        actor=actor,
        action='SHIFT_OPENED',
        entity_type='shift',
        entity_id=shift.id,
        metadata={'opening_cash': str(shift.opening_cash), 'warnings': warnings},
    )
    return OpenShiftResult(shift=shift, warnings=warnings)


def record_cash_movement(
    db: Session,
    *,
    actor: Actor,
    shift_id: int,
    movement_type: CashMovementType,
    amount: Decimal,
    reason: str,
) -> CashMovement:
    amount = Decimal(amount)
    if amount <= 0:
        raise UserFacingError('Amount must be greater than zero', code='invalid_amount')
    reason = (reason or '').strip()
    if not reason:
        raise PreconditionViolation('A reason is required', code='reason_required')

    with atomic(db):
        shift = load_shift(db, actor=actor, shift_id=shift_id)
        _require_open(shift)
        movement = CashMovement(
            shift_id=shift.id,
            movement_type=movement_type,
            amount=round_money(amount),
            reason=reason,
            cashier_id=actor.cashier_id,
            created_at=_now(),
        )
        db.add(movement)
        db.flush()

    logger.info('Cash movement', extra={'shift_id': shift.id, 'type': movement_type.value, 'amount': str(movement.amount)})
    log_audit(
        db,
        actor=actor,
        action=movement_type.value,
        entity_type='shift',
        entity_id=shift.id,
        metadata={'amount': str(movement.amount), 'reason': reason},
    )
    return movement


def list_shift_orders(db: Session, *, shift_id: int, statuses=None) -> list[Order]:
    stmt = select(Order).where(Order.shift_id == shift_id)
    if statuses is not None:
        stmt = stmt.where(Order.status.in_(list(statuses)))
    return db.execute(stmt.order_by(Order.order_number.asc())).scalars().all()


def list_held_orders(db: Session, *, shift_id: int) -> list[Order]:
    return list_shift_orders(db, shift_id=shift_id, statuses=[OrderStatus.HELD])


def list_open_orders(db: Session, *, shift_id: int) -> list[Order]:
    return list_shift_orders(db, shift_id=shift_id, statuses=[OrderStatus.OPEN])


def _empty_buckets() -> dict[str, Decimal]:
    return {bucket: round_money(ZERO) for bucket in BUCKETS}


def _refunds_by_bucket(refunds: list[Refund], payments_by_order: dict[int, list[Payment]]) -> dict[str, Decimal]:
    """Attribute each refund to the tenders its order was paid with.

    One payment takes the whole refund; several share it in proportion to their amounts;
    an order without recorded payments refunds in cash.
    """
    buckets = defaultdict(lambda: ZERO)
    for refund in refunds:
        payments = payments_by_order.get(refund.order_id, [])
        if not payments:
            buckets[CASH] += Decimal(refund.amount)
            continue
        shares = allocate_proportionally(Decimal(refund.amount), [Decimal(payment.amount) for payment in payments])
        for payment, share in zip(payments, shares):
            buckets[payment_bucket(payment.method)] += share
    result = _empty_buckets()
    for bucket, value in buckets.items():
        result[bucket] = round_money(value)
    return result


def build_z_report(db: Session, *, shift: Shift) -> ZReport:
    """Re-sum every figure from stored orders, payments, refunds and movements."""
    orders = list_shift_orders(db, shift_id=shift.id)
    settled = [order for order in orders if order.status in SETTLED_STATUSES]
    settled_ids = {order.id for order in settled}

    # Refunds count against the shift that paid them out, which may not be the one that took the payment.
    refunds = db.execute(select(Refund).where(Refund.shift_id == shift.id).order_by(Refund.id.asc())).scalars().all()
    paid_order_ids = settled_ids | {refund.order_id for refund in refunds}
    payments = []
    if paid_order_ids:
        payments = db.execute(
            select(Payment)
            .where(Payment.order_id.in_(sorted(paid_order_ids)), Payment.reversed_at.is_(None))
            .order_by(Payment.id.asc())
        ).scalars().all()
    movements = db.execute(
        select(CashMovement).where(CashMovement.shift_id == shift.id).order_by(CashMovement.id.asc())
    ).scalars().all()

    payments_by_order: dict[int, list[Payment]] = defaultdict(list)
    payment_totals = _empty_buckets()
    for payment in payments:
        payments_by_order[payment.order_id].append(payment)
        if payment.order_id not in settled_ids:
            continue
        bucket = payment_bucket(payment.method)
        payment_totals[bucket] = round_money(payment_totals[bucket] + Decimal(payment.amount))

    refund_totals = _refunds_by_bucket(refunds, payments_by_order)
    net_payments = {bucket: round_money(payment_totals[bucket] - refund_totals[bucket]) for bucket in BUCKETS}

    cash_in = round_money(
        sum((Decimal(m.amount) for m in movements if m.movement_type == CashMovementType.CASH_IN), ZERO)
    )
    cash_out = round_money(
        sum((Decimal(m.amount) for m in movements if m.movement_type == CashMovementType.CASH_OUT), ZERO)
    )
    opening_cash = round_money(shift.opening_cash)
    expected_cash = round_money(opening_cash + payment_totals[CASH] + cash_in - cash_out - refund_totals[CASH])

    gross_sales = round_money(sum((Decimal(order.subtotal) for order in settled), ZERO))
    discounts = round_money(sum((Decimal(order.discount_amount) for order in settled), ZERO))
    closing_cash = round_money(shift.closing_cash) if shift.closing_cash is not None else None

    return ZReport(
        shift_id=shift.id,
        status=shift.status.value,
        opening_cash=opening_cash,
        gross_sales=gross_sales,
        discounts=discounts,
        net_sales=round_money(gross_sales - discounts),
        service_charge=round_money(sum((Decimal(order.service_charge) for order in settled), ZERO)),
        tax=round_money(sum((Decimal(order.tax_amount) for order in settled), ZERO)),
        total_sales=round_money(sum((Decimal(order.total) for order in settled), ZERO)),
        payments=payment_totals,
        refunds=refund_totals,
        refunds_total=round_money(sum(refund_totals.values(), ZERO)),
        net_payments=net_payments,
        cash_in=cash_in,
        cash_out=cash_out,
        expected_cash=expected_cash,
        closing_cash=closing_cash,
        variance=round_money(closing_cash - expected_cash) if closing_cash is not None else None,
        paid_orders=len(settled),
        cancelled_orders=sum(1 for order in orders if order.status == OrderStatus.CANCELLED),
        voided_orders=sum(1 for order in orders if order.status == OrderStatus.VOIDED),
        held_orders=sum(1 for order in orders if order.status == OrderStatus.HELD),
        refund_count=len(refunds),
    )


def compute_expected_cash(db: Session, *, shift: Shift) -> Decimal:
    return build_z_report(db, shift=shift).expected_cash


def close_shift(db: Session, *, actor: Actor, shift_id: int, closing_cash: Decimal | None) -> ZReport:
    if closing_cash is None:
        raise UserFacingError('Counted closing cash is required', code='invalid_amount')
    closing_cash = Decimal(closing_cash)
    if closing_cash < 0:
        raise UserFacingError('Closing cash cannot be negative', code='invalid_amount')

    with atomic(db):
        shift = load_shift(db, actor=actor, shift_id=shift_id)
        _require_open(shift)
        held = list_held_orders(db, shift_id=shift.id)
        if held:
            raise PreconditionViolation(
                'Resolve every held order before closing the shift',
                code='shift_has_held_orders',
                details={'order_ids': [order.id for order in held]},
            )

        expected = compute_expected_cash(db, shift=shift)
        shift.closing_cash = round_money(closing_cash)
        shift.expected_cash = expected
        shift.cash_variance = round_money(shift.closing_cash - expected)
        shift.status = ShiftStatus.CLOSED
        shift.closed_at = _now()
        db.flush()

    if shift.cash_variance != 0:
        logger.warning(
            'Drawer over/short at close',
            extra={'shift_id': shift.id, 'expected_cash': str(expected), 'variance': str(shift.cash_variance)},
        )
    logger.info('Shift closed', extra={'shift_id': shift.id})
    log_audit(
        db,
        actor=actor,
        action='SHIFT_CLOSED',
        entity_type='shift',
        entity_id=shift.id,
        metadata={
            'closing_cash': str(shift.closing_cash),
            'expected_cash': str(shift.expected_cash),
            'variance': str(shift.cash_variance),
        },
    )
    return build_z_report(db, shift=shift)
