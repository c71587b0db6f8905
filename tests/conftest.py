from __future__ import annotations

import itertools
from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db, get_object_storage
from app.db.base import Base
from app.db.models import Admin, GroupMember, Parent, School, Student, StudentGroup, StudentParent


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------

class FakeStorage:
    """In-memory object storage."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.deleted: list[str] = []
        self.fail_uploads = False

    def upload_file(self, data: bytes, mime_type: str, key: str) -> bool:
        if self.fail_uploads:
            return False
        self.objects[key] = (data, mime_type)
        return True

    def delete_file(self, key: str) -> bool:
        self.deleted.append(key)
        return self.objects.pop(key, None) is not None


class Directory:
    """Builds directory rows (schools, people, links, groups) for tests."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self._seq = itertools.count(1)

    def _add(self, row):
        self.db.add(row)
        self.db.flush()
        return row

    def school(self, name: str | None = None) -> School:
        return self._add(School(name=name or f"School {next(self._seq)}"))

    def admin(self, school: School) -> Admin:
        n = next(self._seq)
        return self._add(
            Admin(school_id=school.id, given_name="Admin", family_name=f"No{n}", email=f"admin{n}@example.com")
        )

    def student(self, school: School, given_name: str | None = None, number: str | None = None, **kw) -> Student:
        n = next(self._seq)
        return self._add(
            Student(
                school_id=school.id,
                given_name=given_name or f"Student{n}",
                family_name=kw.pop("family_name", "Test"),
                student_number=number or f"S-{n:04d}",
                email=kw.pop("email", f"student{n}@example.com"),
                **kw,
            )
        )

    def parent(self, school: School, *students: Student, given_name: str | None = None) -> Parent:
        n = next(self._seq)
        parent = self._add(Parent(school_id=school.id, given_name=given_name or f"Parent{n}", family_name="Test"))
        for student in students:
            self.link(student, parent)
        return parent

    def link(self, student: Student, parent: Parent) -> StudentParent:
        return self._add(StudentParent(student_id=student.id, parent_id=parent.id))

    def group(
        self,
        school: School,
        name: str | None = None,
        parent: StudentGroup | None = None,
        members: tuple[Student, ...] | list[Student] = (),
    ) -> StudentGroup:
        group = self._add(
            StudentGroup(
                school_id=school.id,
                name=name or f"Group {next(self._seq)}",
                parent_group_id=parent.id if parent else None,
            )
        )
        for student in members:
            self._add(GroupMember(group_id=group.id, student_id=student.id))
        return group


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_session():
    """In-memory SQLite session with all tables created."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def directory(db_session: Session) -> Directory:
    return Directory(db_session)


@pytest.fixture()
def school(directory: Directory) -> School:
    return directory.school("Main School")


@pytest.fixture()
def admin(directory: Directory, school: School) -> Admin:
    return directory.admin(school)


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def count_queries(db_session: Session):
    """Context manager yielding a list that collects every SQL statement executed inside it."""

    @contextmanager
    def _count():
        statements: list[str] = []

        def _record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        engine = db_session.get_bind()
        event.listen(engine, "before_cursor_execute", _record)
        try:
            yield statements
        finally:
            event.remove(engine, "before_cursor_execute", _record)

    return _count


@pytest.fixture()
def client(db_session: Session, storage: FakeStorage, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient with the session and object storage overridden."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from app.core.settings import get_settings

    get_settings.cache_clear()

    from app.api.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_object_storage] = lambda: storage
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
    get_settings.cache_clear()


@pytest.fixture()
def caller_headers(school: School, admin: Admin) -> dict[str, str]:
    return {"X-Admin-Id": str(admin.id), "X-School-Id": str(school.id)}
