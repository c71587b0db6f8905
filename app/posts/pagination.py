from __future__ import annotations

import math
from dataclasses import dataclass

from app.core.errors import InvalidInputError


@dataclass(frozen=True)
class Page:
    page: int
    per_page: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.per_page) if self.per_page else 0

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    def validate(self) -> Page:
        """Reject page numbers below 1 or past the last page (an empty result set has no last page)."""
        if self.page < 1 or (self.total_pages and self.page > self.total_pages):
            raise InvalidInputError("invalid_page", field="page")
        return self

    def as_dict(self) -> dict:
        return {
            "current_page": self.page,
            "per_page": self.per_page,
            "total_pages": self.total_pages,
            "total": self.total,
            "next_page": self.page + 1 if self.page < self.total_pages else None,
            "prev_page": self.page - 1 if self.page > 1 else None,
        }
