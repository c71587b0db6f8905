"""Recipient materializer.

Turns a targeting request (direct student IDs plus group IDs) into
concrete ``PostStudent`` recipient rows and one ``PostParent`` delivery row
per guardian of each new recipient.

Recipient rows are keyed on ``(student_id, group_id)`` within a post,
``group_id`` being ``None`` for direct targeting.  A student targeted
directly and through a group gets two rows; the same key never gets two.

Nothing here commits.  Callers wrap these calls in ``app.db.session.atomic``.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from app.db.models import PostParent, PostStudent, StudentParent
from app.posts.hierarchy import groups_in_school, resolve_descendants
from app.posts.membership import guardians_of_students, students_in_groups, students_in_school

logger = logging.getLogger(__name__)

# Plain UPDATE/DELETE: rowcount is the statement's own; loaded objects are refreshed explicitly.
BULK = {"synchronize_session": False}

RecipientKey = tuple[int, int | None]


@dataclass
class FanOutResult:
    """Row counts written by a materialize or resync call."""

    recipients_added: int = 0
    recipients_removed: int = 0
    deliveries_added: int = 0
    deliveries_removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.recipients_added or self.recipients_removed)


def _key_order(key: RecipientKey) -> tuple[int, int]:
    student_id, group_id = key
    return student_id, group_id or 0


# ---------------------------------------------------------------------------
# Key computation
# ---------------------------------------------------------------------------

def target_keys(
    db: Session,
    direct_student_ids: Iterable[int],
    group_ids: Iterable[int],
    school_id: int,
) -> set[RecipientKey]:
    """Resolve a targeting request to the recipient keys it implies.

    IDs outside *school_id* contribute nothing.
    """
    direct = students_in_school(db, direct_student_ids, school_id)
    seeds = groups_in_school(db, group_ids, school_id)
    all_group_ids = resolve_descendants(db, seeds, school_id)
    pairs = students_in_groups(db, all_group_ids)

    keys: set[RecipientKey] = {(student_id, None) for student_id in direct}
    keys.update((student_id, group_id) for group_id, student_id in pairs)
    return keys


def existing_recipients(db: Session, post_id: int) -> dict[RecipientKey, int]:
    """Return ``{(student_id, group_id): post_student_id}`` for *post_id*."""
    rows = db.execute(
        select(PostStudent.id, PostStudent.student_id, PostStudent.group_id).where(
            PostStudent.post_id == post_id
        )
    ).all()
    return {(student_id, group_id): recipient_id for recipient_id, student_id, group_id in rows}


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def insert_deliveries(db: Session, recipient_students: dict[int, int]) -> int:
    """Insert pending delivery rows for ``{post_student_id: student_id}``.

    One row per guardian the student has right now.  Returns rows inserted.
    """
    guardians = guardians_of_students(db, recipient_students.values())
    rows = [
        {
            "post_student_id": recipient_id,
            "parent_id": parent_id,
            "push_pending": True,
            "viewed_at": None,
        }
        for recipient_id, student_id in sorted(recipient_students.items())
        for parent_id in guardians.get(student_id, [])
    ]
    if rows:
        db.execute(insert(PostParent), rows)
    return len(rows)


def insert_recipients(db: Session, post_id: int, keys: Iterable[RecipientKey]) -> tuple[int, int]:
    """Bulk-insert recipient rows for *keys* plus their delivery rows.

    *keys* must not already exist on the post.  Returns
    ``(recipients_inserted, deliveries_inserted)``.
    """
    new_keys = sorted(set(keys), key=_key_order)
    if not new_keys:
        return 0, 0

    db.execute(
        insert(PostStudent),
        [
            {"post_id": post_id, "student_id": student_id, "group_id": group_id}
            for student_id, group_id in new_keys
        ],
    )

    stored = existing_recipients(db, post_id)
    recipient_students = {stored[key]: key[0] for key in new_keys}
    deliveries = insert_deliveries(db, recipient_students)
    return len(new_keys), deliveries


def delete_recipients(db: Session, recipient_ids: Iterable[int]) -> tuple[int, int]:
    """Delete recipient rows and, first, their delivery rows.

    Returns ``(recipients_deleted, deliveries_deleted)``.
    """
    ids = sorted(set(recipient_ids))
    if not ids:
        return 0, 0
    deliveries = db.execute(
        delete(PostParent).where(PostParent.post_student_id.in_(ids)), execution_options=BULK,
    ).rowcount
    recipients = db.execute(delete(PostStudent).where(PostStudent.id.in_(ids)), execution_options=BULK).rowcount
    return recipients, deliveries


def materialize(
    db: Session,
    post_id: int,
    direct_student_ids: Iterable[int],
    group_ids: Iterable[int],
    school_id: int,
) -> FanOutResult:
    """Fan a post out to its targeted students and their guardians.

    Keys already present on the post are skipped, so calling this on a
    post that has recipients only adds what is missing.  Empty targeting
    writes nothing and is not an error.
    """
    keys = target_keys(db, direct_student_ids, group_ids, school_id)
    to_add = keys - existing_recipients(db, post_id).keys()
    recipients, deliveries = insert_recipients(db, post_id, to_add)

    logger.info(
        "Materialized post=%s recipients_added=%d deliveries_added=%d",
        post_id, recipients, deliveries,
    )
    return FanOutResult(recipients_added=recipients, deliveries_added=deliveries)


# ---------------------------------------------------------------------------
# Guardian link changes
# ---------------------------------------------------------------------------

def backfill_guardian(db: Session, student_id: int, parent_id: int) -> int:
    """Give a newly linked guardian a pending delivery row on every post the student receives.

    Recipient rows that already carry a delivery row for *parent_id* are
    left alone.  Does nothing if the student/guardian link does not exist.
    """
    linked = db.execute(
        select(StudentParent.id).where(
            StudentParent.student_id == student_id,
            StudentParent.parent_id == parent_id,
        )
    ).first()
    if linked is None:
        return 0

    recipient_ids = set(
        db.execute(select(PostStudent.id).where(PostStudent.student_id == student_id)).scalars().all()
    )
    if not recipient_ids:
        return 0

    covered = set(
        db.execute(
            select(PostParent.post_student_id).where(
                PostParent.parent_id == parent_id,
                PostParent.post_student_id.in_(recipient_ids),
            )
        ).scalars().all()
    )
    missing = sorted(recipient_ids - covered)
    if missing:
        db.execute(
            insert(PostParent),
            [
                {"post_student_id": recipient_id, "parent_id": parent_id, "push_pending": True, "viewed_at": None}
                for recipient_id in missing
            ],
        )
    logger.info("Backfilled guardian deliveries student=%s rows=%d", student_id, len(missing))
    return len(missing)


def drop_guardian(db: Session, student_id: int, parent_id: int) -> int:
    """Delete a guardian's delivery rows on the student's recipient rows."""
    recipient_ids = select(PostStudent.id).where(PostStudent.student_id == student_id)
    removed = db.execute(
        delete(PostParent).where(
            PostParent.parent_id == parent_id,
            PostParent.post_student_id.in_(recipient_ids),
        ),
        execution_options=BULK,
    ).rowcount
    logger.info("Dropped guardian deliveries student=%s rows=%d", student_id, removed)
    return removed
