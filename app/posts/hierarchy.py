"""Group hierarchy resolver.

Expands seed group IDs to every group nested beneath them through the
``parent_group_id`` link.  The link is not guaranteed acyclic, so the
traversal keeps a visited set and only ever feeds unseen IDs into the
next frontier.
"""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import StudentGroup


def resolve_descendants(
    db: Session,
    seed_group_ids: Iterable[int],
    school_id: int,
) -> set[int]:
    """Return *seed_group_ids* plus all of their descendant group IDs.

    One query per level of the hierarchy.  Children are restricted to
    *school_id*; the seeds themselves are returned as given.
    """
    result: set[int] = set(seed_group_ids)
    frontier = set(result)

    while frontier:
        child_ids = db.execute(
            select(StudentGroup.id).where(
                StudentGroup.parent_group_id.in_(frontier),
                StudentGroup.school_id == school_id,
            )
        ).scalars().all()

        new_ids = set(child_ids) - result
        if not new_ids:
            break
        result |= new_ids
        frontier = new_ids

    return result


def groups_in_school(db: Session, group_ids: Iterable[int], school_id: int) -> set[int]:
    """Return the subset of *group_ids* that belong to *school_id*."""
    ids = set(group_ids)
    if not ids:
        return set()
    found = db.execute(
        select(StudentGroup.id).where(
            StudentGroup.id.in_(ids),
            StudentGroup.school_id == school_id,
        )
    ).scalars().all()
    return set(found)
