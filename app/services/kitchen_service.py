from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.auth import Actor
from app.logging_config import get_logger
from app.models import Order, OrderStatus, OrderType
from app.services.audit_service import log_audit
from app.services.errors import KitchenNotificationError, PreconditionViolation
from app.services.kitchen_notifier import KitchenNotifier, KitchenTicket, KitchenTicketLine
from app.services.order_service import list_lines, load_order, require_open_shift, require_status, touch
from app.services.provider_factory import get_kitchen_notifier
from app.services.unit_of_work import atomic

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def mark_lines_sent(db: Session, *, actor: Actor, order_id: int) -> KitchenTicket:
    """Stamp every unsent, non-voided line of a dine-in order and return the ticket to deliver.

    The caller commits before delivering the ticket; delivery never gates the order state.
    """
    with atomic(db):
        order = load_order(db, actor=actor, order_id=order_id)
        if order.order_type != OrderType.DINE_IN:
            raise PreconditionViolation('Only dine-in orders go to the kitchen display', code='kitchen_dine_in_only')
        require_status(order, OrderStatus.OPEN, OrderStatus.HELD)
        require_open_shift(db, order)

        pending = [line for line in list_lines(db, order.id, include_voided=False) if line.kitchen_sent_at is None]
        if not pending:
            raise PreconditionViolation('Nothing new to send to the kitchen', code='kitchen_nothing_to_send')
        now = _now()
        for line in pending:
            line.kitchen_sent_at = now
        touch(order)
        db.flush()

    log_audit(
        db,
        actor=actor,
        action='KITCHEN_SENT',
        entity_type='order',
        entity_id=order.id,
        metadata={'line_ids': [line.id for line in pending]},
    )
    return _ticket(order, pending)


def _ticket(order: Order, lines) -> KitchenTicket:
    return KitchenTicket(
        order_id=order.id,
        order_number=order.order_number,
        table_id=order.table_id,
        lines=[
            KitchenTicketLine(
                line_id=line.id,
                name=line.name,
                quantity=line.quantity,
                modifiers=list(line.modifiers or []),
                notes=line.notes,
            )
            for line in lines
        ],
    )


def deliver_ticket(ticket: KitchenTicket, *, notifier: KitchenNotifier | None = None) -> None:
    notifier = notifier or get_kitchen_notifier()
    try:
        notifier.send_to_kitchen(ticket)
    except KitchenNotificationError:
        logger.error('Kitchen notification failed', exc_info=True, extra={'order_id': ticket.order_id})
        raise
    logger.info('Kitchen ticket delivered', extra={'order_id': ticket.order_id, 'lines': len(ticket.lines)})
