"""
Atomic boundaries for order and shift mutations.

``atomic`` runs a block inside a SAVEPOINT: any exception rolls back every row
touched inside it and leaves the outer transaction usable. Optimistic-lock
failures from the ORM are translated into ``ConcurrencyConflict`` so callers can
reload and retry instead of reporting a business-rule failure.

``TransactionalCommand`` is the base for operations that touch several
aggregates (merge, split, table checkout): validation and every write happen in
one savepoint, so either all constituent orders change or none do.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generic, Iterator, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.logging_config import get_logger
from app.services.errors import ConcurrencyConflict

logger = get_logger(__name__)

T = TypeVar('T')


@contextmanager
def atomic(db: Session) -> Iterator[None]:
    try:
        with db.begin_nested():
            yield
    except StaleDataError as exc:
        logger.info('Optimistic lock conflict', extra={'error': str(exc)})
        raise ConcurrencyConflict('Order was changed by another cashier; reload and retry') from exc


class TransactionalCommand(Generic[T]):
    action = 'COMMAND'

    def validate(self, db: Session) -> None:
        """Check every precondition before the first write."""

    def apply(self, db: Session) -> T:
        raise NotImplementedError

    def execute(self, db: Session) -> T:
        with atomic(db):
            self.validate(db)
            result = self.apply(db)
            db.flush()
        logger.info('Command applied', extra={'command': self.action})
        return result
