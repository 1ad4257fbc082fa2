from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Actor, get_current_actor
from app.db import get_db
from app.dependencies import get_idempotency_key
from app.schemas import (
    CommitItemIn,
    DiscountIn,
    LineNotesIn,
    LineQuantityIn,
    PaymentIn,
    ReasonIn,
    RefundIn,
    StartNewOrderIn,
    TransferLineIn,
    VersionIn,
)
from app.services import kitchen_service, order_service, payment_service
from app.services.draft_order import DraftOrder, PersistedOrder
from app.services.errors import UserFacingError
from app.services.order_service import order_snapshot
from app.services.payment_service import PaymentResult, PaymentSplit

router = APIRouter(prefix='/orders', tags=['orders'])


def draft_payload(draft: DraftOrder) -> dict:
    payload = asdict(draft)
    payload['order_type'] = draft.order_type.value
    return payload


def payment_payload(db: Session, result: PaymentResult) -> dict:
    return {
        'order_ids': result.order_ids,
        'total_due': str(result.total_due),
        'total_tendered': str(result.total_tendered),
        'change_due': str(result.change_due),
        'replayed': result.replayed,
        'payments': [
            {
                'id': payment.id,
                'order_id': payment.order_id,
                'method': payment.method,
                'amount': str(payment.amount),
                'tendered_amount': str(payment.tendered_amount),
            }
            for payment in result.payments
        ],
    }


def _order_response(db: Session, order_id: int, actor: Actor) -> dict:
    return order_snapshot(db, order_service.get_order(db, actor=actor, order_id=order_id))


@router.get('/{order_id}')
def get_order(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return _order_response(db, order_id, actor)


@router.post('/items')
def commit_item(payload: CommitItemIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    if payload.order_id is not None:
        active = PersistedOrder(order_id=payload.order_id)
    elif payload.draft is not None:
        active = DraftOrder(**payload.draft.model_dump())
    else:
        raise UserFacingError('Either order_id or draft is required', code='order_or_draft_required')
    order, line = order_service.commit_item(
        db,
        actor=actor,
        active=active,
        menu_item_id=payload.menu_item_id,
        quantity=payload.quantity,
        modifier_ids=payload.modifier_ids,
        notes=payload.notes,
        expected_version=payload.expected_version,
    )
    db.commit()
    return {'line_id': line.id, 'order': order_snapshot(db, order)}


@router.post('/new')
def start_new_order(payload: StartNewOrderIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    current = PersistedOrder(order_id=payload.current_order_id) if payload.current_order_id else None
    draft, parked = order_service.start_new_order(
        db,
        actor=actor,
        current=current,
        **payload.draft.model_dump(exclude={'notes'}),
    )
    db.commit()
    return {
        'draft': draft_payload(draft),
        'parked_order': order_snapshot(db, parked) if parked else None,
    }


@router.patch('/{order_id}/lines/{line_id}/quantity')
def update_line_quantity(
    order_id: int,
    line_id: int,
    payload: LineQuantityIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    order_service.update_line_quantity(
        db,
        actor=actor,
        order_id=order_id,
        line_id=line_id,
        quantity=payload.quantity,
        expected_version=payload.expected_version,
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.patch('/{order_id}/lines/{line_id}/notes')
def update_line_notes(
    order_id: int,
    line_id: int,
    payload: LineNotesIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    order_service.update_line_notes(
        db,
        actor=actor,
        order_id=order_id,
        line_id=line_id,
        notes=payload.notes,
        expected_version=payload.expected_version,
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/lines/{line_id}/void')
def void_line(
    order_id: int,
    line_id: int,
    payload: ReasonIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    order_service.void_line(
        db,
        actor=actor,
        order_id=order_id,
        line_id=line_id,
        reason=payload.reason,
        expected_version=payload.expected_version,
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.put('/{order_id}/discount')
def set_discount(order_id: int, payload: DiscountIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    order_service.set_discount(
        db,
        actor=actor,
        order_id=order_id,
        discount_type=payload.discount_type,
        value=payload.value,
        expected_version=payload.expected_version,
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.delete('/{order_id}/discount')
def clear_discount(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    order_service.clear_discount(db, actor=actor, order_id=order_id)
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/hold')
def hold_order(
    order_id: int,
    payload: VersionIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    expected_version = payload.expected_version if payload else None
    order_service.hold_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/resume')
def resume_order(
    order_id: int,
    payload: VersionIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    expected_version = payload.expected_version if payload else None
    order_service.resume_order(db, actor=actor, order_id=order_id, expected_version=expected_version)
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/cancel')
def cancel_order(order_id: int, payload: ReasonIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    order_service.cancel_order(
        db, actor=actor, order_id=order_id, reason=payload.reason, expected_version=payload.expected_version
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/void')
def void_order(order_id: int, payload: ReasonIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    order_service.void_order(
        db, actor=actor, order_id=order_id, reason=payload.reason, expected_version=payload.expected_version
    )
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/pay')
def pay_order(
    order_id: int,
    payload: PaymentIn,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: Session = Depends(get_db),
):
    result = payment_service.complete_payment(
        db,
        actor=actor,
        order_id=order_id,
        splits=[PaymentSplit(method=split.method, amount=split.amount) for split in payload.splits],
        idempotency_key=idempotency_key,
        expected_version=payload.expected_version,
    )
    db.commit()
    return {'payment': payment_payload(db, result), 'order': _order_response(db, order_id, actor)}


@router.post('/{order_id}/refund')
def refund_order(order_id: int, payload: RefundIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    refund = payment_service.refund_order(db, actor=actor, order_id=order_id, amount=payload.amount, reason=payload.reason)
    db.commit()
    return {
        'refund': {
            'id': refund.id,
            'amount': str(refund.amount),
            'refund_type': refund.refund_type.value,
            'reason': refund.reason,
            'shift_id': refund.shift_id,
        },
        'order': _order_response(db, order_id, actor),
    }


@router.post('/{order_id}/reopen')
def reopen_order(order_id: int, payload: ReasonIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    payment_service.reopen_order(db, actor=actor, order_id=order_id, reason=payload.reason)
    db.commit()
    return _order_response(db, order_id, actor)


@router.post('/{order_id}/transfer-line')
def transfer_line(
    order_id: int,
    payload: TransferLineIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    source, target = order_service.transfer_line(
        db,
        actor=actor,
        source_order_id=order_id,
        line_id=payload.line_id,
        target_order_id=payload.target_order_id,
    )
    db.commit()
    return {'source': order_snapshot(db, source), 'target': order_snapshot(db, target)}


@router.post('/{order_id}/kitchen')
def send_to_kitchen(order_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    ticket = kitchen_service.mark_lines_sent(db, actor=actor, order_id=order_id)
    db.commit()
    kitchen_service.deliver_ticket(ticket)
    return {'sent_line_ids': [line.line_id for line in ticket.lines], 'order': _order_response(db, order_id, actor)}
