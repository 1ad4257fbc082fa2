from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Actor, get_current_actor
from app.db import get_db
from app.dependencies import get_idempotency_key
from app.routers.orders import draft_payload, payment_payload
from app.schemas import CheckoutIn, MergeIn, MoveIn, SplitIn, TableClickIn
from app.services import payment_service, table_service
from app.services.draft_order import PersistedOrder
from app.services.order_service import order_snapshot
from app.services.payment_service import PaymentSplit
from app.services.table_service import SplitSlice

router = APIRouter(prefix='/tables', tags=['tables'])


def _order_summary(order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'status': order.status.value,
        'total': str(order.total),
        'version': order.version,
    }


@router.get('')
def table_board(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return [
        {
            'id': state.table.id,
            'name': state.table.name,
            'capacity': state.table.capacity,
            'status': state.status,
            'orders': [_order_summary(order) for order in state.orders],
        }
        for state in table_service.table_board(db, actor=actor)
    ]


@router.post('/{table_id}/click')
def click_table(
    table_id: int,
    payload: TableClickIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    current = PersistedOrder(order_id=payload.current_order_id) if payload.current_order_id else None
    click = table_service.resolve_table_click(db, actor=actor, table_id=table_id, current=current)
    db.commit()
    return {
        'table_id': click.table_id,
        'candidates': [_order_summary(order) for order in click.candidates],
        'draft': draft_payload(click.draft) if click.draft else None,
        'parked_order': _order_summary(click.parked_order) if click.parked_order else None,
    }


@router.post('/merge')
def merge_orders(payload: MergeIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    primary, secondary = table_service.merge_orders(
        db, actor=actor, order_id=payload.order_id, other_order_id=payload.other_order_id
    )
    db.commit()
    return {'primary': order_snapshot(db, primary), 'secondary': _order_summary(secondary)}


@router.post('/split')
def split_order(payload: SplitIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    source, new_order = table_service.split_order(
        db,
        actor=actor,
        order_id=payload.order_id,
        slices=[SplitSlice(line_id=item.line_id, quantity=item.quantity) for item in payload.slices],
    )
    db.commit()
    return {'original': order_snapshot(db, source), 'new_order': order_snapshot(db, new_order)}


@router.post('/move')
def move_order(payload: MoveIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    order = table_service.move_order_to_table(db, actor=actor, order_id=payload.order_id, table_id=payload.table_id)
    db.commit()
    return order_snapshot(db, order)


@router.post('/checkout')
def checkout(
    payload: CheckoutIn,
    actor: Actor = Depends(get_current_actor),
    idempotency_key: str | None = Depends(get_idempotency_key),
    db: Session = Depends(get_db),
):
    result = payment_service.table_checkout(
        db,
        actor=actor,
        order_ids=payload.order_ids,
        splits=[PaymentSplit(method=split.method, amount=split.amount) for split in payload.splits],
        idempotency_key=idempotency_key,
    )
    db.commit()
    return payment_payload(db, result)
