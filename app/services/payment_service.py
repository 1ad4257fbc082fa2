"""
Payment completion, group checkout, refunds and reopen.

Payment completion is the one transition that must happen at most once per order:
the order row is locked, its status re-checked, every tender and the status change
are written in one savepoint, and the order's version column makes a second
concurrent writer fail instead of paying twice. A retry that carries the same
idempotency key as the recorded payment gets the original result back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor
from app.config import settings
from app.logging_config import get_logger
from app.models import Order, OrderStatus, Payment, Refund, RefundType
from app.services.audit_service import log_audit
from app.services.errors import PreconditionViolation, UserFacingError
from app.services.order_math_service import ZERO, allocate_proportionally, round_money
from app.services.order_service import (
    check_version,
    count_active_lines,
    current_shift_for,
    load_order,
    load_orders,
    require_open_shift,
    require_reason,
    require_status,
    touch,
)
from app.services.unit_of_work import TransactionalCommand, atomic

logger = get_logger(__name__)

CASH_METHOD = 'cash'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class PaymentSplit:
    method: str
    amount: Decimal


@dataclass(frozen=True)
class PaymentResult:
    order_ids: list[int]
    total_due: Decimal
    total_tendered: Decimal
    change_due: Decimal
    payments: list[Payment]
    replayed: bool = False


def _validated_splits(splits: Sequence[PaymentSplit]) -> list[PaymentSplit]:
    if not splits:
        raise UserFacingError('At least one payment is required', code='invalid_amount')
    allowed = {method.strip().lower() for method in settings.payment_methods}
    cleaned = []
    for split in splits:
        method = split.method.strip().lower()
        if method not in allowed:
            raise UserFacingError(
                f'Unsupported payment method: {split.method}',
                code='invalid_payment_method',
                details={'method': split.method, 'allowed': sorted(allowed)},
            )
        amount = Decimal(split.amount)
        if amount <= 0:
            raise UserFacingError('Payment amounts must be greater than zero', code='invalid_amount')
        cleaned.append(PaymentSplit(method=method, amount=round_money(amount)))
    return cleaned


def _settle_splits(splits: list[PaymentSplit], total_due: Decimal) -> tuple[list[Decimal], Decimal]:
    """Return the amount each split actually applies to the bill, plus change owed.

    Cash-only tenders may exceed the bill; change comes out of the last tenders first.
    Any non-cash tender means the split must match the bill exactly.
    """
    tendered = round_money(sum((split.amount for split in splits), ZERO))
    if tendered < total_due:
        raise UserFacingError(
            'Payment does not cover the order total',
            code='underpayment',
            details={'total_due': str(total_due), 'tendered': str(tendered)},
        )
    change = round_money(tendered - total_due)
    if change > 0 and any(split.method != CASH_METHOD for split in splits):
        raise UserFacingError(
            'Card and wallet payments cannot exceed the amount due',
            code='card_overpayment',
            details={'total_due': str(total_due), 'tendered': str(tendered)},
        )

    applied = [split.amount for split in splits]
    remaining_change = change
    for index in range(len(applied) - 1, -1, -1):
        if remaining_change <= 0:
            break
        taken = min(applied[index], remaining_change)
        applied[index] = round_money(applied[index] - taken)
        remaining_change = round_money(remaining_change - taken)
    return applied, change


def _replayed_result(db: Session, order: Order, idempotency_key: str | None) -> PaymentResult | None:
    if not idempotency_key:
        return None
    payments = db.execute(
        select(Payment)
        .where(
            Payment.order_id == order.id,
            Payment.idempotency_key == idempotency_key,
            Payment.reversed_at.is_(None),
        )
        .order_by(Payment.id.asc())
    ).scalars().all()
    if not payments:
        return None
    total_due = round_money(order.total)
    tendered = round_money(sum((Decimal(payment.tendered_amount) for payment in payments), ZERO))
    return PaymentResult(
        order_ids=[order.id],
        total_due=total_due,
        total_tendered=tendered,
        change_due=round_money(tendered - sum((Decimal(p.amount) for p in payments), ZERO)),
        payments=payments,
        replayed=True,
    )


def _write_payments(
    db: Session,
    *,
    actor: Actor,
    order: Order,
    splits: list[PaymentSplit],
    applied: list[Decimal],
    idempotency_key: str | None,
    now: datetime,
) -> list[Payment]:
    payments = []
    for split, amount in zip(splits, applied):
        if amount <= 0:
            continue
        payment = Payment(
            order_id=order.id,
            method=split.method,
            amount=amount,
            tendered_amount=split.amount,
            idempotency_key=idempotency_key,
            cashier_id=actor.cashier_id,
            created_at=now,
        )
        db.add(payment)
        payments.append(payment)
    return payments


def _mark_paid(order: Order, now: datetime) -> None:
    order.status = OrderStatus.PAID
    order.paid_at = now
    touch(order)


def _require_payable(db: Session, order: Order) -> None:
    if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
        raise PreconditionViolation(
            f'Order #{order.order_number} is already paid',
            code='order_already_paid',
            details={'order_id': order.id},
        )
    require_status(order, OrderStatus.OPEN)
    require_open_shift(db, order)
    if count_active_lines(db, order.id) == 0:
        raise PreconditionViolation('Cannot pay an order without items', code='order_empty', details={'order_id': order.id})


def complete_payment(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    splits: Sequence[PaymentSplit],
    idempotency_key: str | None = None,
    expected_version: int | None = None,
) -> PaymentResult:
    splits = _validated_splits(splits)

    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id)
        if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
            replay = _replayed_result(db, order, idempotency_key)
            if replay:
                logger.info('Payment replay', extra={'order_id': order.id})
                return replay
        check_version(order, expected_version)
        _require_payable(db, order)

        total_due = round_money(order.total)
        applied, change = _settle_splits(splits, total_due)
        now = _now()
        payments = _write_payments(
            db, actor=actor, order=order, splits=splits, applied=applied, idempotency_key=idempotency_key, now=now
        )
        _mark_paid(order, now)
        db.flush()

    logger.info('Order paid', extra={'order_id': order.id, 'total': str(total_due), 'change': str(change)})
    log_audit(
        db,
        actor=actor,
        action='ORDER_PAID',
        entity_type='order',
        entity_id=order.id,
        metadata={
            'total': str(total_due),
            'change': str(change),
            'splits': [{'method': split.method, 'amount': str(split.amount)} for split in splits],
        },
    )
    return PaymentResult(
        order_ids=[order.id],
        total_due=total_due,
        total_tendered=round_money(sum((split.amount for split in splits), ZERO)),
        change_due=change,
        payments=payments,
    )


def allocate_tenders(order_amounts: Sequence[Decimal], tenders: Sequence[Decimal]) -> list[list[Decimal]]:
    """Split tenders across orders so each order's row sums to its amount.

    Every order but the last takes its amount from what is left of each tender, in
    proportion to those leftovers; the last order takes the leftovers themselves.
    """
    left = [round_money(tender) for tender in tenders]
    grid = []
    for amount in order_amounts[:-1]:
        shares = allocate_proportionally(round_money(amount), left)
        left = [round_money(rest - share) for rest, share in zip(left, shares)]
        grid.append(shares)
    if order_amounts:
        grid.append(left)
    return grid


def _replayed_checkout(db: Session, orders: Sequence[Order], idempotency_key: str | None) -> PaymentResult | None:
    if not idempotency_key or any(order.status not in (OrderStatus.PAID, OrderStatus.REFUNDED) for order in orders):
        return None
    payments = db.execute(
        select(Payment)
        .where(
            Payment.order_id.in_([order.id for order in orders]),
            Payment.idempotency_key == idempotency_key,
            Payment.reversed_at.is_(None),
        )
        .order_by(Payment.id.asc())
    ).scalars().all()
    if {payment.order_id for payment in payments} != {order.id for order in orders}:
        return None
    applied = round_money(sum((Decimal(payment.amount) for payment in payments), ZERO))
    tendered = round_money(sum((Decimal(payment.tendered_amount) for payment in payments), ZERO))
    return PaymentResult(
        order_ids=[order.id for order in orders],
        total_due=round_money(sum((Decimal(order.total) for order in orders), ZERO)),
        total_tendered=tendered,
        change_due=round_money(tendered - applied),
        payments=payments,
        replayed=True,
    )


class TableCheckout(TransactionalCommand[PaymentResult]):
    """Pay every listed order of one table with a single set of tenders."""

    action = 'TABLE_CHECKOUT'

    def __init__(self, *, actor: Actor, order_ids: Sequence[int], splits: Sequence[PaymentSplit], idempotency_key: str | None = None):
        self.actor = actor
        self.order_ids = list(order_ids)
        self.splits = _validated_splits(splits)
        self.idempotency_key = idempotency_key
        self.orders: list[Order] = []

    def validate(self, db: Session) -> None:
        if not self.order_ids:
            raise PreconditionViolation('Select at least one order to check out', code='order_empty')
        orders = load_orders(db, actor=self.actor, order_ids=self.order_ids)
        self.orders = sorted(orders.values(), key=lambda order: order.order_number)
        table_ids = {order.table_id for order in self.orders}
        if len(table_ids) != 1 or None in table_ids:
            raise PreconditionViolation('Orders must share one table', code='checkout_mixed_tables')
        for order in self.orders:
            _require_payable(db, order)

    def apply(self, db: Session) -> PaymentResult:
        totals = [round_money(order.total) for order in self.orders]
        total_due = round_money(sum(totals, ZERO))
        applied, change = _settle_splits(self.splits, total_due)
        now = _now()

        tendered_total = round_money(sum((split.amount for split in self.splits), ZERO))
        applied_shares = allocate_tenders(totals, applied)
        tendered_shares = allocate_tenders(
            allocate_proportionally(tendered_total, totals), [split.amount for split in self.splits]
        )

        payments = []
        for order, shares, tendered in zip(self.orders, applied_shares, tendered_shares):
            order_splits = [
                PaymentSplit(method=split.method, amount=amount) for split, amount in zip(self.splits, tendered)
            ]
            payments.extend(
                _write_payments(
                    db,
                    actor=self.actor,
                    order=order,
                    splits=order_splits,
                    applied=shares,
                    idempotency_key=self.idempotency_key,
                    now=now,
                )
            )
            _mark_paid(order, now)

        return PaymentResult(
            order_ids=[order.id for order in self.orders],
            total_due=total_due,
            total_tendered=tendered_total,
            change_due=change,
            payments=payments,
        )


def table_checkout(
    db: Session,
    *,
    actor: Actor,
    order_ids: Sequence[int],
    splits: Sequence[PaymentSplit],
    idempotency_key: str | None = None,
) -> PaymentResult:
    command = TableCheckout(actor=actor, order_ids=order_ids, splits=splits, idempotency_key=idempotency_key)
    if idempotency_key and command.order_ids:
        with atomic(db):
            orders = load_orders(db, actor=actor, order_ids=command.order_ids)
            replay = _replayed_checkout(
                db, sorted(orders.values(), key=lambda order: order.order_number), idempotency_key
            )
        if replay:
            logger.info('Table checkout replay', extra={'order_ids': replay.order_ids})
            return replay

    result = command.execute(db)
    log_audit(
        db,
        actor=actor,
        action='TABLE_CHECKOUT',
        entity_type='order',
        entity_id=result.order_ids[0],
        metadata={'order_ids': result.order_ids, 'total': str(result.total_due), 'change': str(result.change_due)},
    )
    return result


def refunded_total(db: Session, order_id: int) -> Decimal:
    amounts = db.execute(select(Refund.amount).where(Refund.order_id == order_id)).scalars().all()
    return round_money(sum((Decimal(amount) for amount in amounts), ZERO))


def refund_order(
    db: Session,
    *,
    actor: Actor,
    order_id: int,
    amount: Decimal | None,
    reason: str,
) -> Refund:
    """Refund part or all of a paid order; ``amount=None`` refunds whatever remains."""
    reason = require_reason(reason)

    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id)
        if order.status == OrderStatus.REFUNDED:
            raise UserFacingError(
                'Order is already fully refunded',
                code='refund_exceeds_remaining',
                details={'remaining': str(round_money(ZERO))},
            )
        require_status(order, OrderStatus.PAID, code='order_not_paid')
        # The money leaves today's drawer, whichever shift took the payment.
        shift = current_shift_for(db, actor)

        total = round_money(order.total)
        remaining = round_money(total - refunded_total(db, order.id))
        amount = remaining if amount is None else round_money(Decimal(amount))
        if amount <= 0:
            raise UserFacingError('Refund amount must be greater than zero', code='invalid_amount')
        if amount > remaining:
            raise UserFacingError(
                'Refund exceeds the amount remaining on this order',
                code='refund_exceeds_remaining',
                details={'remaining': str(remaining), 'requested': str(amount)},
            )

        is_full = amount == remaining
        refund = Refund(
            order_id=order.id,
            shift_id=shift.id,
            amount=amount,
            refund_type=RefundType.FULL if amount == total else RefundType.PARTIAL,
            reason=reason,
            cashier_id=actor.cashier_id,
            created_at=_now(),
        )
        db.add(refund)
        if is_full:
            order.status = OrderStatus.REFUNDED
        touch(order)
        db.flush()

    logger.info('Order refunded', extra={'order_id': order.id, 'amount': str(amount), 'fully_refunded': is_full})
    log_audit(
        db,
        actor=actor,
        action='ORDER_REFUNDED',
        entity_type='order',
        entity_id=order.id,
        metadata={
            'amount': str(amount),
            'reason': reason,
            'refund_type': refund.refund_type.value,
            'shift_id': shift.id,
        },
    )
    return refund


def reopen_order(db: Session, *, actor: Actor, order_id: int, reason: str | None = None) -> Order:
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id)
        if order.status == OrderStatus.REFUNDED or refunded_total(db, order.id) > 0:
            raise PreconditionViolation(
                'Orders with refunds cannot be reopened',
                code='refund_exists',
                details={'order_id': order.id},
            )
        require_status(order, OrderStatus.PAID, code='order_not_paid')
        require_open_shift(db, order)
        now = _now()
        payments = db.execute(
            select(Payment).where(Payment.order_id == order.id, Payment.reversed_at.is_(None))
        ).scalars().all()
        for payment in payments:
            payment.reversed_at = now
        order.status = OrderStatus.OPEN
        order.paid_at = None
        touch(order)
        db.flush()

    logger.info('Order reopened', extra={'order_id': order.id, 'reversed_payments': len(payments)})
    log_audit(
        db,
        actor=actor,
        action='ORDER_REOPENED',
        entity_type='order',
        entity_id=order.id,
        metadata={'reason': (reason or '').strip() or None, 'reversed_payments': len(payments)},
    )
    return order


def list_payments(db: Session, order_id: int) -> list[Payment]:
    return db.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.id.asc())).scalars().all()
