#!/usr/bin/env python3
"""Seed demo data: one school, an admin, students with guardians, and a group tree.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py

Group tree (``Grade 1`` is the root)::

    Grade 1
    ├── Class 1-A
    │   └── Choir 1-A
    └── Class 1-B
"""
from __future__ import annotations

import sys

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from app.core.settings import get_settings
from app.db.base import Base
from app.db.models import Admin, GroupMember, Parent, School, Student, StudentGroup, StudentParent


def seed(session: Session) -> None:
    """Insert the demo school and its directory rows."""

    school = School(name="Demo Elementary")
    session.add(school)
    session.flush()

    session.add(Admin(school_id=school.id, given_name="Aiko", family_name="Tanaka", email="admin@example.com"))

    demo_students = [
        # (given, family, student_number, guardians)
        ("Haruto", "Sato", "S-0001", [("Yui", "Sato")]),
        ("Sakura", "Suzuki", "S-0002", [("Ken", "Suzuki"), ("Mai", "Suzuki")]),
        ("Ren", "Takahashi", "S-0003", [("Emi", "Takahashi")]),
        ("Hina", "Ito", "S-0004", []),
        ("Sota", "Watanabe", "S-0005", [("Daichi", "Watanabe")]),
    ]

    students: list[Student] = []
    guardian_count = 0
    for given, family, number, guardians in demo_students:
        student = Student(
            school_id=school.id,
            given_name=given,
            family_name=family,
            student_number=number,
            email=f"{number.lower()}@students.example.com",
        )
        session.add(student)
        session.flush()
        students.append(student)
        for parent_given, parent_family in guardians:
            parent = Parent(school_id=school.id, given_name=parent_given, family_name=parent_family)
            session.add(parent)
            session.flush()
            session.add(StudentParent(student_id=student.id, parent_id=parent.id))
            guardian_count += 1

    grade = StudentGroup(school_id=school.id, name="Grade 1")
    session.add(grade)
    session.flush()
    class_a = StudentGroup(school_id=school.id, name="Class 1-A", parent_group_id=grade.id)
    class_b = StudentGroup(school_id=school.id, name="Class 1-B", parent_group_id=grade.id)
    session.add_all([class_a, class_b])
    session.flush()
    choir = StudentGroup(school_id=school.id, name="Choir 1-A", parent_group_id=class_a.id)
    session.add(choir)
    session.flush()

    memberships = {
        class_a.id: students[0:2],
        class_b.id: students[2:4],
        choir.id: [students[1], students[4]],
    }
    for group_id, members in memberships.items():
        for student in members:
            session.add(GroupMember(group_id=group_id, student_id=student.id))

    session.commit()
    print(
        f"Seeded school {school.id}: {len(students)} students, {guardian_count} guardians, 4 groups. "
        f"Use X-School-Id: {school.id}."
    )


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session)


if __name__ == "__main__":
    main()
