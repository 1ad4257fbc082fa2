from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.auth import Actor
from app.logging_config import get_logger
from app.models import AuditLog

logger = get_logger(__name__)


def log_audit(
    db: Session,
    *,
    actor: Actor | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Record an audit row after a business transition.

    Written in its own savepoint: a failing insert is logged and discarded without
    touching the transition that triggered it.
    """
    try:
        with db.begin_nested():
            db.add(
                AuditLog(
                    restaurant_id=actor.restaurant_id if actor else None,
                    branch_id=actor.branch_id if actor else None,
                    actor_cashier_id=actor.cashier_id if actor else None,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    ip=ip if ip is not None else (actor.ip if actor else None),
                    meta=metadata or {},
                )
            )
    except SQLAlchemyError:
        logger.warning(
            'Audit record dropped',
            exc_info=True,
            extra={'action': action, 'entity_type': entity_type, 'entity_id': entity_id},
        )
