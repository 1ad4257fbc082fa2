from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Actor, get_current_actor
from app.db import get_db
from app.models import Shift
from app.schemas import CashMovementIn, CloseShiftIn, OpenShiftIn
from app.services import shift_service
from app.services.errors import NotFoundError
from app.services.order_service import order_snapshot

router = APIRouter(prefix='/shifts', tags=['shifts'])


def _shift_payload(shift: Shift) -> dict:
    return {
        'id': shift.id,
        'cashier_id': shift.cashier_id,
        'branch_id': shift.branch_id,
        'status': shift.status.value,
        'opening_cash': str(shift.opening_cash),
        'closing_cash': str(shift.closing_cash) if shift.closing_cash is not None else None,
        'expected_cash': str(shift.expected_cash) if shift.expected_cash is not None else None,
        'cash_variance': str(shift.cash_variance) if shift.cash_variance is not None else None,
    }


@router.post('')
def open_shift(payload: OpenShiftIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    result = shift_service.open_shift(db, actor=actor, opening_cash=payload.opening_cash)
    db.commit()
    return {'shift': _shift_payload(result.shift), 'warnings': result.warnings}


@router.get('/current')
def current_shift(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    shift = shift_service.get_current_shift(db, actor=actor)
    if not shift:
        raise NotFoundError('No open shift for this cashier')
    return _shift_payload(shift)


@router.post('/{shift_id}/cash-movements')
def cash_movement(
    shift_id: int,
    payload: CashMovementIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    movement = shift_service.record_cash_movement(
        db,
        actor=actor,
        shift_id=shift_id,
        movement_type=payload.movement_type,
        amount=payload.amount,
        reason=payload.reason,
    )
    db.commit()
    return {'id': movement.id, 'movement_type': movement.movement_type.value, 'amount': str(movement.amount)}


@router.get('/{shift_id}/held-orders')
def held_orders(shift_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    shift = shift_service.load_shift(db, actor=actor, shift_id=shift_id, for_update=False)
    return [order_snapshot(db, order) for order in shift_service.list_held_orders(db, shift_id=shift.id)]


@router.get('/{shift_id}/open-orders')
def open_orders(shift_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    shift = shift_service.load_shift(db, actor=actor, shift_id=shift_id, for_update=False)
    return [order_snapshot(db, order) for order in shift_service.list_open_orders(db, shift_id=shift.id)]


@router.get('/{shift_id}/z-report')
def z_report(shift_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    shift = shift_service.load_shift(db, actor=actor, shift_id=shift_id, for_update=False)
    return shift_service.build_z_report(db, shift=shift).as_dict()


@router.post('/{shift_id}/close')
def close_shift(
    shift_id: int,
    payload: CloseShiftIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    report = shift_service.close_shift(db, actor=actor, shift_id=shift_id, closing_cash=payload.closing_cash)
    db.commit()
    return report.as_dict()
