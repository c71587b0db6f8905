"""Directory events consumed by the fan-out core.

The guardian directory owns ``student_parents``.  When it links or unlinks
a guardian it publishes one of these events, and ``dispatch`` keeps the
delivery rows of already-materialized posts in step.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.posts.materializer import backfill_guardian, drop_guardian

logger = logging.getLogger(__name__)

EVENT_GUARDIAN_LINKED = "guardian_linked"
EVENT_GUARDIAN_UNLINKED = "guardian_unlinked"


@dataclass(frozen=True)
class GuardianLinked:
    student_id: int
    parent_id: int
    event_type: str = EVENT_GUARDIAN_LINKED


@dataclass(frozen=True)
class GuardianUnlinked:
    student_id: int
    parent_id: int
    event_type: str = EVENT_GUARDIAN_UNLINKED


DirectoryEvent = GuardianLinked | GuardianUnlinked

_HANDLERS: dict[str, Callable[[Session, int, int], int]] = {
    EVENT_GUARDIAN_LINKED: backfill_guardian,
    EVENT_GUARDIAN_UNLINKED: drop_guardian,
}


def dispatch(db: Session, event: DirectoryEvent) -> int:
    """Apply *event* and return the number of delivery rows written or removed.

    Flushes but does not commit; the publisher owns the transaction so the
    link change and the delivery rows land together.
    """
    handler = _HANDLERS.get(event.event_type)
    if handler is None:
        raise ValueError(f"Unknown directory event {event.event_type!r}")
    affected = handler(db, event.student_id, event.parent_id)
    logger.info("Directory event type=%s affected=%d", event.event_type, affected)
    return affected
