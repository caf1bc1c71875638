"""
Optimistic Locking Infrastructure
Status-guarded, version-bumping updates used for every ledger and contract transition
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type, Union

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from models import utcnow
from utils.exceptions import ConcurrentModification

logger = logging.getLogger(__name__)


def _as_tuple(expected: Union[str, Iterable[str]]) -> tuple:
    if isinstance(expected, str):
        return (expected,)
    return tuple(expected)


def guarded_update(
    session: Session,
    model_class: Type[Any],
    entity_id: Any,
    expected_status: Union[str, Iterable[str]],
    values: Dict[str, Any],
    status_column: str = "status",
    extra_criteria: Optional[Iterable[Any]] = None,
) -> bool:
    """
    ``UPDATE ... WHERE id = :id AND status IN (:expected)`` with a version bump.

    Returns True when exactly one row moved. False means another writer got
    there first (or the precondition never held); the row is left untouched.
    Any cached instance of the row is expired either way so the caller reads
    the applied state.
    """
    session.flush()

    column = getattr(model_class, status_column)
    criteria = [model_class.id == entity_id, column.in_(_as_tuple(expected_status))]
    if extra_criteria:
        criteria.extend(extra_criteria)

    update_values = dict(values)
    if hasattr(model_class, "version"):
        update_values["version"] = model_class.version + 1
    if hasattr(model_class, "updated_at"):
        update_values.setdefault("updated_at", utcnow())

    stmt = (
        update(model_class)
        .where(*criteria)
        .values(**update_values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)

    cached = session.identity_map.get(identity_key(model_class, entity_id))
    if cached is not None:
        session.expire(cached)

    if result.rowcount == 1:
        logger.debug(
            f"GUARDED_UPDATE: {model_class.__name__} id={entity_id} "
            f"{status_column} in {_as_tuple(expected_status)} applied"
        )
        return True

    logger.debug(
        f"GUARDED_UPDATE_SKIPPED: {model_class.__name__} id={entity_id} "
        f"precondition {status_column} in {_as_tuple(expected_status)} not met"
    )
    return False


def versioned_update(
    session: Session,
    model_class: Type[Any],
    entity_id: Any,
    current_version: int,
    values: Dict[str, Any],
):
    """Version-only compare-and-set; raises ConcurrentModification on conflict"""
    session.flush()
    update_values = dict(values)
    update_values["version"] = current_version + 1
    if hasattr(model_class, "updated_at"):
        update_values.setdefault("updated_at", utcnow())

    stmt = (
        update(model_class)
        .where(model_class.id == entity_id, model_class.version == current_version)
        .values(**update_values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)

    cached = session.identity_map.get(identity_key(model_class, entity_id))
    if cached is not None:
        session.expire(cached)

    if result.rowcount == 0:
        logger.warning(
            f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
            f"expected_version={current_version}"
        )
        raise ConcurrentModification(
            f"Version conflict for {model_class.__name__} id={entity_id}. "
            f"Expected version {current_version} but the row was modified by another process."
        )
