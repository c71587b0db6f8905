from sqlalchemy import create_engine, inspect

from app.db.base import Base
from app.db import models  # noqa: F401


def _unique_sets(inspector, table: str) -> set[tuple[str, ...]]:
    return {tuple(c["column_names"]) for c in inspector.get_unique_constraints(table)}


def test_schema_creation_in_sqlite_includes_all_tables():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    table_names = set(inspect(engine).get_table_names())

    assert {
        "schools",
        "admins",
        "students",
        "parents",
        "student_parents",
        "student_groups",
        "group_members",
        "posts",
        "post_students",
        "post_parents",
    }.issubset(table_names)


def test_recipient_and_delivery_uniqueness():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    inspector = inspect(engine)

    assert ("post_id", "student_id", "group_id") in _unique_sets(inspector, "post_students")
    assert ("post_student_id", "parent_id") in _unique_sets(inspector, "post_parents")
    assert ("school_id", "name") in _unique_sets(inspector, "student_groups")


def test_delivery_columns():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    columns = {c["name"]: c for c in inspect(engine).get_columns("post_parents")}

    assert columns["push_pending"]["nullable"] is False
    assert columns["viewed_at"]["nullable"] is True


def test_recipient_group_is_nullable():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    columns = {c["name"]: c for c in inspect(engine).get_columns("post_students")}

    assert columns["group_id"]["nullable"] is True
    assert columns["post_id"]["nullable"] is False
