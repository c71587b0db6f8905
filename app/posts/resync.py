"""Sender resync: replace a post's targeting with a minimal diff.

Only recipient rows that leave the target set are deleted (delivery rows
first) and only rows that join it are inserted, so untouched recipients
keep their delivery state, including ``viewed_at``.

The whole operation runs in one transaction.  The post row is locked with
``SELECT ... FOR UPDATE`` so two resyncs of the same post serialize.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.db.models import Post
from app.db.session import atomic
from app.posts.materializer import (
    FanOutResult,
    delete_recipients,
    existing_recipients,
    insert_recipients,
    target_keys,
)

logger = logging.getLogger(__name__)


def lock_post(db: Session, post_id: int, school_id: int) -> Post:
    """Load *post_id* for update, scoped to *school_id*; raise ``NotFoundError`` otherwise."""
    post = db.execute(
        select(Post)
        .where(Post.id == post_id, Post.school_id == school_id)
        .with_for_update()
    ).scalar_one_or_none()
    if post is None:
        raise NotFoundError("Post", post_id)
    return post


def resync(
    db: Session,
    post_id: int,
    target_student_ids: Iterable[int],
    target_group_ids: Iterable[int],
    school_id: int,
) -> FanOutResult:
    """Make the post's recipients match the new targeting exactly.

    Raises ``NotFoundError`` when the post is not in *school_id*.  Any
    failure rolls back every change made by this call.
    """
    student_ids = list(target_student_ids)
    group_ids = list(target_group_ids)

    with atomic(db):
        post = lock_post(db, post_id, school_id)

        existing = existing_recipients(db, post_id)
        target = target_keys(db, student_ids, group_ids, school_id)

        to_remove = [existing[key] for key in existing.keys() - target]
        to_add = target - existing.keys()

        recipients_removed, deliveries_removed = delete_recipients(db, to_remove)
        recipients_added, deliveries_added = insert_recipients(db, post_id, to_add)

        post.edited_at = datetime.now(timezone.utc)
        db.flush()

    result = FanOutResult(
        recipients_added=recipients_added,
        recipients_removed=recipients_removed,
        deliveries_added=deliveries_added,
        deliveries_removed=deliveries_removed,
    )
    logger.info(
        "Resynced post=%s added=%d removed=%d deliveries_added=%d deliveries_removed=%d",
        post_id, recipients_added, recipients_removed, deliveries_added, deliveries_removed,
    )
    return result
