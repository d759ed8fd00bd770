"""Atomic transaction utilities for ledger and auction mutations"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional, Type

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for one atomic database transaction.
    Commits on clean exit, rolls back on any error and re-raises.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
        logger.debug("Atomic transaction committed successfully")
    except Exception as e:
        session.rollback()
        if isinstance(e, SQLAlchemyError):
            logger.error(f"Transaction rolled back due to database error: {e}")
        else:
            logger.debug(f"Transaction rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()


def versioned_update(
    session: Session,
    model_class: Type[Any],
    record_id: Any,
    expected_version: int,
    values: Dict[str, Any],
) -> bool:
    """
    Compare-and-swap update guarded by the row's version column.

    Returns False when another writer committed first (0 rows matched); the
    caller re-reads and decides whether to retry.
    """
    stmt = (
        update(model_class)
        .where(model_class.id == record_id, model_class.version == expected_version)
        .values(version=expected_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        logger.warning(
            f"⚠️ OPTIMISTIC_LOCK_CONFLICT: {model_class.__name__} {record_id} "
            f"no longer at version {expected_version}"
        )
        return False
    return True
