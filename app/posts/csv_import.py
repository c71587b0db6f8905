"""Bulk post import from CSV.

Columns: ``title, description, priority, group_names, student_numbers``.
The last two hold comma-separated lists inside the cell.

Rules
-----
- The file is decoded as UTF-8; a leading BOM is ignored.
- Rows whose cells are all blank are skipped and not counted.
- Group names and student numbers must exist in the caller's school.  They
  are resolved with one query each for the whole file.
- Valid rows sharing (title, description, priority) become one post whose
  targeting is the de-duplicated union of the rows' groups and students.
- Strict mode writes nothing if any row fails.  Lenient mode writes every
  valid post and reports the failing rows alongside.
- All posts of one import are written in a single transaction.
"""
from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.errors import InvalidInputError
from app.core.validation import is_valid_priority, is_valid_string, is_valid_student_number, is_valid_text
from app.db.models import Post, Student, StudentGroup
from app.db.session import atomic
from app.posts.materializer import materialize

logger = logging.getLogger(__name__)

COLUMNS: tuple[str, ...] = ("title", "description", "priority", "group_names", "student_numbers")
BOM = "\ufeff"
TEMPLATE_FILENAME = "message_template.csv"

MESSAGE_EMPTY = "csv_is_empty_but_valid"
MESSAGE_SUCCESS = "csv_processed_successfully"
MESSAGE_WITH_ERRORS = "csv_processed_with_errors"


@dataclass
class ImportRow:
    row_number: int
    title: str
    description: str
    priority: str
    group_names: list[str]
    student_numbers: list[str]

    def as_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "group_names": ",".join(self.group_names),
            "student_numbers": ",".join(self.student_numbers),
        }


@dataclass
class RowError:
    row_number: int
    row: dict
    errors: dict[str, str]

    def as_dict(self) -> dict:
        return {"row_number": self.row_number, "row": self.row, "errors": self.errors}


@dataclass
class ImportResult:
    success: bool = False
    message: str = MESSAGE_EMPTY
    total: int = 0
    inserted: list[dict] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    error_csv: str | None = None

    @property
    def status_code(self) -> int:
        return 400 if self.errors else 200

    def as_dict(self) -> dict:
        body = {
            "success": self.success,
            "message": self.message,
            "summary": {
                "total": self.total,
                "processed": len(self.inserted),
                "errors": len(self.errors),
                "inserted": len(self.inserted),
            },
            "inserted": self.inserted,
            "errors": [error.as_dict() for error in self.errors],
        }
        if self.error_csv is not None:
            body["error_csv"] = self.error_csv
        return body


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _cell(value: object) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value).strip()


def _split_list(cell: str) -> list[str]:
    return [item.strip() for item in cell.split(",") if item.strip()]


def parse_rows(data: bytes) -> list[ImportRow]:
    """Parse the uploaded bytes into rows; blank rows are dropped.

    ``row_number`` is the line of the row in the file, the header being
    line 1, so blank lines still count.
    """
    if not data.strip():
        return []
    try:
        frame = pd.read_csv(
            io.BytesIO(data),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skip_blank_lines=False,
        )
    except pd.errors.EmptyDataError:
        return []
    except UnicodeDecodeError:
        raise InvalidInputError("invalid_csv_encoding", field="file")
    except pd.errors.ParserError:
        raise InvalidInputError("invalid_csv", field="file")

    frame.columns = [str(column).strip() for column in frame.columns]
    rows: list[ImportRow] = []
    for offset, record in enumerate(frame.to_dict(orient="records")):
        cells = {column: _cell(record.get(column)) for column in COLUMNS}
        if not any(_cell(value) for value in record.values()):
            continue
        rows.append(
            ImportRow(
                row_number=offset + 2,
                title=cells["title"],
                description=cells["description"],
                priority=cells["priority"],
                group_names=_split_list(cells["group_names"]),
                student_numbers=_split_list(cells["student_numbers"]),
            )
        )
    return rows


def _row_errors(row: ImportRow, group_ids: dict[str, int], student_ids: dict[str, int]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not is_valid_string(row.title):
        errors["title"] = "invalid_title"
    if not is_valid_text(row.description):
        errors["description"] = "invalid_description"
    if not is_valid_priority(row.priority):
        errors["priority"] = "invalid_priority"
    if any(not is_valid_string(name) or name not in group_ids for name in row.group_names):
        errors["group_names"] = "invalid_group_names"
    if any(not is_valid_student_number(number) or number not in student_ids for number in row.student_numbers):
        errors["student_numbers"] = "invalid_student_numbers"
    return errors


# ---------------------------------------------------------------------------
# Output files
# ---------------------------------------------------------------------------

def build_error_csv(errors: list[RowError]) -> str:
    """Failing rows with an ``errors`` column (``field:key; field:key``), BOM-prefixed."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([*COLUMNS, "errors"])
    for error in errors:
        flattened = "; ".join(f"{key}:{value}" for key, value in error.errors.items())
        writer.writerow([*(error.row.get(column, "") for column in COLUMNS), flattened])
    return BOM + buf.getvalue()


def build_template_csv() -> str:
    buf = io.StringIO()
    csv.writer(buf).writerow(COLUMNS)
    return BOM + buf.getvalue()


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

class PostImporter:
    def __init__(self, db_session: Session, admin_id: int, school_id: int) -> None:
        self.db = db_session
        self.admin_id = admin_id
        self.school_id = school_id

    def _resolve_groups(self, rows: list[ImportRow]) -> dict[str, int]:
        names = {name for row in rows for name in row.group_names}
        if not names:
            return {}
        found = self.db.execute(
            select(StudentGroup.name, StudentGroup.id).where(
                StudentGroup.school_id == self.school_id,
                StudentGroup.name.in_(names),
            )
        ).all()
        return {name: group_id for name, group_id in found}

    def _resolve_students(self, rows: list[ImportRow]) -> dict[str, int]:
        numbers = {number for row in rows for number in row.student_numbers}
        if not numbers:
            return {}
        found = self.db.execute(
            select(Student.student_number, Student.id).where(
                Student.school_id == self.school_id,
                Student.student_number.in_(numbers),
            )
        ).all()
        return {number: student_id for number, student_id in found}

    def run(self, data: bytes, throw_in_error: bool = False, with_csv: bool = False) -> ImportResult:
        rows = parse_rows(data)
        result = ImportResult(total=len(rows))
        if not rows:
            result.success = True
            return result

        group_ids = self._resolve_groups(rows)
        student_ids = self._resolve_students(rows)

        merged: dict[tuple[str, str, str], ImportRow] = {}
        for row in rows:
            errors = _row_errors(row, group_ids, student_ids)
            if errors:
                result.errors.append(RowError(row_number=row.row_number, row=row.as_dict(), errors=errors))
                continue
            key = (row.title, row.description, row.priority)
            target = merged.get(key)
            if target is None:
                merged[key] = ImportRow(
                    row_number=row.row_number,
                    title=row.title,
                    description=row.description,
                    priority=row.priority,
                    group_names=list(dict.fromkeys(row.group_names)),
                    student_numbers=list(dict.fromkeys(row.student_numbers)),
                )
            else:
                target.group_names = list(dict.fromkeys(target.group_names + row.group_names))
                target.student_numbers = list(dict.fromkeys(target.student_numbers + row.student_numbers))

        if not (result.errors and throw_in_error):
            result.inserted = self._write(list(merged.values()), group_ids, student_ids)

        if result.errors:
            result.message = MESSAGE_WITH_ERRORS
            if with_csv:
                result.error_csv = build_error_csv(result.errors)
        else:
            result.message = MESSAGE_SUCCESS
            result.success = True

        logger.info(
            "CSV import school=%s rows=%d inserted=%d errors=%d strict=%s",
            self.school_id, result.total, len(result.inserted), len(result.errors), throw_in_error,
        )
        return result

    def _write(self, posts: list[ImportRow], group_ids: dict[str, int], student_ids: dict[str, int]) -> list[dict]:
        inserted: list[dict] = []
        if not posts:
            return inserted
        with atomic(self.db):
            for row in posts:
                post = Post(
                    title=row.title,
                    description=row.description,
                    priority=row.priority,
                    admin_id=self.admin_id,
                    school_id=self.school_id,
                )
                self.db.add(post)
                self.db.flush()
                fan_out = materialize(
                    self.db,
                    post.id,
                    [student_ids[number] for number in row.student_numbers],
                    [group_ids[name] for name in row.group_names],
                    self.school_id,
                )
                inserted.append(
                    {
                        "id": post.id,
                        "title": row.title,
                        "description": row.description,
                        "priority": row.priority,
                        "group_names": row.group_names,
                        "student_numbers": row.student_numbers,
                        "recipients": fan_out.recipients_added,
                    }
                )
        return inserted
