"""Input validators shared by the post routes, the post service and CSV import."""
from __future__ import annotations

from collections.abc import Iterable

from app.core.errors import InvalidInputError

PRIORITIES: tuple[str, ...] = ("low", "medium", "high")

MAX_TITLE_LENGTH = 100


def is_valid_string(value: object, max_length: int = MAX_TITLE_LENGTH) -> bool:
    return isinstance(value, str) and bool(value.strip()) and len(value) <= max_length


def is_valid_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_valid_priority(value: object) -> bool:
    return isinstance(value, str) and value in PRIORITIES


def is_valid_student_number(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def is_positive_int(value: object) -> bool:
    # bool is an int subclass; True must not pass as ID 1
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def require_id_list(values: Iterable[object] | None, field: str) -> list[int]:
    """Return *values* as a de-duplicated list of IDs, preserving order.

    Raises ``InvalidInputError`` if any element is not a positive integer.
    ``None`` is treated as an empty list.
    """
    if values is None:
        return []
    ids: list[int] = []
    seen: set[int] = set()
    for value in values:
        if not is_positive_int(value):
            raise InvalidInputError(f"invalid_{field}", field=field)
        if value not in seen:
            seen.add(value)
            ids.append(value)
    return ids


def require_post_content(title: object, description: object, priority: object) -> None:
    if not is_valid_string(title):
        raise InvalidInputError("invalid_title", field="title")
    if not is_valid_text(description):
        raise InvalidInputError("invalid_description", field="description")
    if not is_valid_priority(priority):
        raise InvalidInputError("invalid_priority", field="priority")
