"""Atomic transaction utilities for settlement operations"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.
    Ensures financial operations are fully atomic and consistent.

    Nested use on the same session defers the commit to the outermost block,
    so a service method can compose other atomic methods into one unit of work.
    """
    if session is None:
        from database import SessionLocal

        session = SessionLocal()
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
        else:
            logger.debug(f"Nested sync transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost")

    except Exception as e:
        # Always rollback on error, regardless of nesting
        if transaction_depth == 0:
            session.rollback()
            logger.debug(f"Sync transaction rolled back due to {type(e).__name__}: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
