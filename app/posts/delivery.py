"""Delivery state tracker.

Per-guardian delivery lifecycle on ``PostParent`` rows::

    PENDING  (push_pending, viewed_at NULL)  notification owed
      |  mark_notified  (external dispatcher)
      v
    NOTIFIED (not push_pending, viewed_at NULL)
      |  retry_*  -> back to PENDING
      |  record_view
      v
    READ     (viewed_at set)  terminal

Every retry is a single conditional UPDATE restricted to unread rows, so a
guardian who has read a post is never re-notified.  A retry that races a
resync removal may match zero rows; that is a valid outcome.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.models import PostParent, PostStudent
from app.posts.materializer import BULK

logger = logging.getLogger(__name__)

STATE_PENDING = "pending"
STATE_NOTIFIED = "notified"
STATE_READ = "read"


def state_of(record: PostParent) -> str:
    """Return the lifecycle state of a delivery record."""
    if record.viewed_at is not None:
        return STATE_READ
    return STATE_PENDING if record.push_pending else STATE_NOTIFIED


class DeliveryTracker:
    """Retry, notify and view transitions for one request's session.

    Methods flush through the session but never commit.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    # -- retry --------------------------------------------------------------

    def _retry(self, recipient_filter, *extra) -> int:
        stmt = (
            update(PostParent)
            .where(
                PostParent.viewed_at.is_(None),
                PostParent.post_student_id.in_(select(PostStudent.id).where(*recipient_filter)),
                *extra,
            )
            .values(push_pending=True)
        )
        return self.db.execute(stmt, execution_options=BULK).rowcount

    def retry_for_group(self, post_id: int, group_id: int) -> int:
        """Re-queue unread deliveries on recipient rows attributed to *group_id*."""
        count = self._retry((PostStudent.post_id == post_id, PostStudent.group_id == group_id))
        logger.info("Retry push post=%s group=%s rows=%d", post_id, group_id, count)
        return count

    def retry_for_student(self, post_id: int, student_id: int) -> int:
        """Re-queue unread deliveries for *student_id*, whatever the origin group."""
        count = self._retry((PostStudent.post_id == post_id, PostStudent.student_id == student_id))
        logger.info("Retry push post=%s student=%s rows=%d", post_id, student_id, count)
        return count

    def retry_for_guardian(self, post_id: int, guardian_id: int) -> int:
        """Re-queue unread deliveries of *guardian_id* across the whole post."""
        count = self._retry((PostStudent.post_id == post_id,), PostParent.parent_id == guardian_id)
        logger.info("Retry push post=%s guardian=%s rows=%d", post_id, guardian_id, count)
        return count

    def reset_for_content_edit(self, post_id: int) -> int:
        """Re-queue every unread delivery of a post whose content changed."""
        count = self._retry((PostStudent.post_id == post_id,))
        logger.info("Content edit re-queued post=%s rows=%d", post_id, count)
        return count

    # -- dispatch -----------------------------------------------------------

    def pending_deliveries(self, post_id: int) -> list[PostParent]:
        """Return unread deliveries of *post_id* that still owe a notification."""
        stmt = (
            select(PostParent)
            .join(PostStudent, PostStudent.id == PostParent.post_student_id)
            .where(
                PostStudent.post_id == post_id,
                PostParent.push_pending.is_(True),
                PostParent.viewed_at.is_(None),
            )
            .order_by(PostParent.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_notified(self, delivery_ids: Iterable[int]) -> int:
        """PENDING -> NOTIFIED for *delivery_ids*; read rows are untouched."""
        ids = sorted(set(delivery_ids))
        if not ids:
            return 0
        stmt = (
            update(PostParent)
            .where(PostParent.id.in_(ids), PostParent.viewed_at.is_(None))
            .values(push_pending=False)
        )
        return self.db.execute(stmt, execution_options=BULK).rowcount

    # -- view ---------------------------------------------------------------

    def _owned_delivery(
        self, delivery_id: int, guardian_id: int, student_id: int, post_id: int | None = None
    ) -> PostParent:
        stmt = (
            select(PostParent)
            .join(PostStudent, PostStudent.id == PostParent.post_student_id)
            .where(
                PostParent.id == delivery_id,
                PostParent.parent_id == guardian_id,
                PostStudent.student_id == student_id,
            )
        )
        if post_id is not None:
            stmt = stmt.where(PostStudent.post_id == post_id)
        record = self.db.execute(stmt).scalar_one_or_none()
        if record is None:
            raise NotFoundError("Delivery", delivery_id)
        return record

    def record_view(
        self, delivery_id: int, guardian_id: int, student_id: int, post_id: int | None = None
    ) -> PostParent:
        """Mark a delivery read the first time its guardian views it.

        A repeat view returns the record unchanged, keeping the first
        ``viewed_at``.  Raises ``NotFoundError`` if the delivery does not
        belong to that guardian and student (and *post_id*, when given).
        """
        record = self._owned_delivery(delivery_id, guardian_id, student_id, post_id)
        if record.viewed_at is not None:
            return record

        self.db.execute(
            update(PostParent)
            .where(PostParent.id == delivery_id, PostParent.viewed_at.is_(None))
            .values(viewed_at=datetime.now(timezone.utc), push_pending=False),
            execution_options=BULK,
        )
        self.db.refresh(record)
        return record

    def record_views(
        self, guardian_id: int, student_id: int, delivery_ids: Iterable[int], post_id: int | None = None
    ) -> int:
        """Mark a batch of a guardian's unread deliveries read.

        IDs that are already read or that belong to someone else (or to
        another post, when *post_id* is given) are skipped.  Raises
        ``NotFoundError`` if none of the IDs qualify.
        """
        ids = sorted(set(delivery_ids))
        unread = []
        if ids:
            stmt = (
                select(PostParent.id)
                .join(PostStudent, PostStudent.id == PostParent.post_student_id)
                .where(
                    PostParent.id.in_(ids),
                    PostParent.parent_id == guardian_id,
                    PostStudent.student_id == student_id,
                    PostParent.viewed_at.is_(None),
                )
            )
            if post_id is not None:
                stmt = stmt.where(PostStudent.post_id == post_id)
            unread = self.db.execute(stmt).scalars().all()
        if not unread:
            raise NotFoundError("Delivery", ids)

        self.db.execute(
            update(PostParent)
            .where(PostParent.id.in_(unread), PostParent.viewed_at.is_(None))
            .values(viewed_at=datetime.now(timezone.utc), push_pending=False),
            execution_options=BULK,
        )
        return len(unread)
