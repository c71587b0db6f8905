"""Membership lookup: the fan-out multipliers.

Each function issues exactly one query regardless of how many IDs it is
given, and none for an empty input.
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import GroupMember, Student, StudentParent


def students_in_groups(db: Session, group_ids: Iterable[int]) -> set[tuple[int, int]]:
    """Return ``(group_id, student_id)`` pairs for every member of *group_ids*.

    Pairs rather than bare student IDs, because the origin group of each
    recipient row has to be preserved.
    """
    ids = set(group_ids)
    if not ids:
        return set()
    rows = db.execute(
        select(GroupMember.group_id, GroupMember.student_id).where(GroupMember.group_id.in_(ids))
    ).all()
    return {(group_id, student_id) for group_id, student_id in rows}


def guardians_of_students(db: Session, student_ids: Iterable[int]) -> dict[int, list[int]]:
    """Return ``{student_id: [parent_id, ...]}``; students without guardians are absent."""
    ids = set(student_ids)
    if not ids:
        return {}
    rows = db.execute(
        select(StudentParent.student_id, StudentParent.parent_id)
        .where(StudentParent.student_id.in_(ids))
        .order_by(StudentParent.student_id, StudentParent.parent_id)
    ).all()
    guardians: dict[int, list[int]] = defaultdict(list)
    for student_id, parent_id in rows:
        guardians[student_id].append(parent_id)
    return dict(guardians)


def students_in_school(db: Session, student_ids: Iterable[int], school_id: int) -> set[int]:
    """Return the subset of *student_ids* that belong to *school_id*."""
    ids = set(student_ids)
    if not ids:
        return set()
    found = db.execute(
        select(Student.id).where(Student.id.in_(ids), Student.school_id == school_id)
    ).scalars().all()
    return set(found)
