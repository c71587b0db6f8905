import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.errors import StorageFailureError
from app.core.settings import get_settings

logger = logging.getLogger(__name__)

_engine = None
_session_factory = None


def get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.database_url, pool_pre_ping=True)
    return _engine


def get_session_factory():
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            class_=Session,
        )
    return _session_factory


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run the enclosed writes as one unit: commit on success, full rollback on error.

    ``SQLAlchemyError`` is re-raised as ``StorageFailureError`` once the
    rollback has completed; every other exception propagates unchanged.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Transaction rolled back after storage error: %s", type(exc).__name__)
        raise StorageFailureError() from exc
    except Exception:
        db.rollback()
        raise
