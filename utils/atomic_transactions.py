"""Atomic transaction utilities for ledger and contract operations"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional, Type

from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal
from utils.exceptions import NotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Unit of work with commit on success and rollback on any error.

    A provided session belongs to the caller: it is yielded as-is and the
    caller's own unit of work decides commit or rollback, so service calls
    compose into one transaction. Without a session a fresh one is opened
    from ``session_factory`` (``SessionLocal`` by default) and closed
    afterwards.
    """
    if session is not None:
        yield session
        return

    new_session = (session_factory or SessionLocal)()
    try:
        yield new_session
        new_session.commit()
        logger.debug("Atomic transaction committed")
    except Exception as e:
        new_session.rollback()
        logger.debug(f"Atomic transaction rolled back: {e}")
        raise
    finally:
        new_session.close()


def locked_row(session: Session, model: Type[Any], entity_id: Any, skip_locked: bool = False):
    """SELECT ... FOR UPDATE on a single row, raising NotFound when absent"""
    session.flush()
    query = session.query(model).filter(model.id == entity_id)
    if skip_locked:
        query = query.with_for_update(skip_locked=True)
    else:
        query = query.with_for_update()
    instance = query.populate_existing().first()
    if instance is None:
        raise NotFound(f"{model.__name__} {entity_id} not found")
    return instance
