"""FastAPI dependency injection: database sessions, caller identity and service factories."""
from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.settings import get_settings
from app.db.session import get_session_factory
from app.posts.service import PostService
from app.storage.object_storage import ObjectStorage, S3ObjectStorage


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dataclass(frozen=True)
class Caller:
    admin_id: int
    school_id: int


def get_caller(
    x_admin_id: int | None = Header(default=None),
    x_school_id: int | None = Header(default=None),
) -> Caller:
    """Resolve the authenticated admin forwarded by the gateway."""
    if x_admin_id is None or x_school_id is None:
        raise HTTPException(status_code=401, detail="missing_caller_identity")
    return Caller(admin_id=x_admin_id, school_id=x_school_id)


def get_object_storage() -> ObjectStorage:
    settings = get_settings()
    return S3ObjectStorage(
        bucket=settings.image_bucket,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url,
    )


def get_post_service(
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
) -> PostService:
    """Return a PostService bound to the current DB session."""
    return PostService(db, storage)
