"""Read statistics.

Counting rules:

* ``read_count``   - distinct guardians with at least one delivery read.
* ``unread_count`` - distinct guardians with at least one delivery unread.
* ``read_percent`` - ``round(100 * students_read / students_targeted, 2)``
  where ``students_read`` counts distinct students with at least one read
  delivery; ``0`` when the post has no recipients.

The per-group and per-student breakdowns apply the guardian rule to the
matching subset of recipient rows.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import case, distinct, func, select
from sqlalchemy.orm import Session

from app.db.models import PostParent, PostStudent, StudentGroup


@dataclass(frozen=True)
class ReadCounts:
    read_count: int = 0
    unread_count: int = 0


def _read_guardian():
    return func.count(distinct(case((PostParent.viewed_at.isnot(None), PostParent.parent_id))))


def _unread_guardian():
    return func.count(distinct(case((PostParent.viewed_at.is_(None), PostParent.parent_id))))


def read_percent(students_read: int, students_targeted: int) -> float:
    if not students_targeted:
        return 0
    return round(100 * students_read / students_targeted, 2)


def post_read_counts(db: Session, post_id: int) -> ReadCounts:
    """Distinct read/unread guardian counts across all deliveries of *post_id*."""
    row = db.execute(
        select(_read_guardian(), _unread_guardian())
        .select_from(PostStudent)
        .join(PostParent, PostParent.post_student_id == PostStudent.id)
        .where(PostStudent.post_id == post_id)
    ).one()
    return ReadCounts(read_count=row[0] or 0, unread_count=row[1] or 0)


def read_percent_by_post(db: Session, post_ids: Iterable[int]) -> dict[int, float]:
    """Return ``{post_id: read_percent}`` for *post_ids* in one query.

    Posts without recipients map to ``0``.
    """
    ids = list(post_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(
            PostStudent.post_id,
            func.count(distinct(PostStudent.student_id)),
            func.count(distinct(case((PostParent.viewed_at.isnot(None), PostStudent.student_id)))),
        )
        .outerjoin(PostParent, PostParent.post_student_id == PostStudent.id)
        .where(PostStudent.post_id.in_(ids))
        .group_by(PostStudent.post_id)
    ).all()
    percents = {post_id: 0 for post_id in ids}
    for post_id, targeted, read in rows:
        percents[post_id] = read_percent(read, targeted)
    return percents


def group_breakdown(
    db: Session,
    post_id: int,
    name_filter: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Per origin group read counts for *post_id*, ordered by group name.

    Returns ``(rows, total)`` where *total* ignores *limit*/*offset*.
    """
    stmt = (
        select(
            StudentGroup.id,
            StudentGroup.name,
            _read_guardian().label("viewed_count"),
            _unread_guardian().label("not_viewed_count"),
        )
        .select_from(PostStudent)
        .join(StudentGroup, StudentGroup.id == PostStudent.group_id)
        .outerjoin(PostParent, PostParent.post_student_id == PostStudent.id)
        .where(PostStudent.post_id == post_id)
        .group_by(StudentGroup.id, StudentGroup.name)
    )
    if name_filter:
        stmt = stmt.where(StudentGroup.name.like(f"%{name_filter}%"))

    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()

    stmt = stmt.order_by(StudentGroup.name, StudentGroup.id).offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = [
        {
            "id": group_id,
            "name": name,
            "viewed_count": viewed or 0,
            "not_viewed_count": not_viewed or 0,
        }
        for group_id, name, viewed, not_viewed in db.execute(stmt).all()
    ]
    return rows, total


def student_breakdown(
    db: Session,
    post_id: int,
    student_ids: Iterable[int],
    group_id: int | None = None,
) -> dict[int, ReadCounts]:
    """Per student read counts for *post_id*, optionally limited to one origin group."""
    ids = list(student_ids)
    if not ids:
        return {}
    stmt = (
        select(PostStudent.student_id, _read_guardian(), _unread_guardian())
        .outerjoin(PostParent, PostParent.post_student_id == PostStudent.id)
        .where(PostStudent.post_id == post_id, PostStudent.student_id.in_(ids))
        .group_by(PostStudent.student_id)
    )
    if group_id is not None:
        stmt = stmt.where(PostStudent.group_id == group_id)
    counts = {student_id: ReadCounts() for student_id in ids}
    for student_id, read, unread in db.execute(stmt).all():
        counts[student_id] = ReadCounts(read_count=read or 0, unread_count=unread or 0)
    return counts
