"""Tests for app/posts/materializer.py."""
from __future__ import annotations

from collections import Counter

import pytest
from sqlalchemy import select

from app.db.models import Post, PostParent, PostStudent
from app.posts.materializer import backfill_guardian, drop_guardian, existing_recipients, materialize


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_post(db_session, school, admin, title="Notice") -> Post:
    post = Post(school_id=school.id, admin_id=admin.id, title=title, description="body", priority="low")
    db_session.add(post)
    db_session.flush()
    return post


def _deliveries(db_session, post_id):
    return db_session.execute(
        select(PostStudent.student_id, PostStudent.group_id, PostParent.parent_id, PostParent.push_pending)
        .join(PostParent, PostParent.post_student_id == PostStudent.id)
        .where(PostStudent.post_id == post_id)
    ).all()


@pytest.fixture()
def scenario(db_session, directory, school, admin):
    """Group G = {A, B}; C targeted directly; A has two guardians, B and C one each."""
    a = directory.student(school, "A")
    b = directory.student(school, "B")
    c = directory.student(school, "C")
    g1 = directory.parent(school, a)
    g2 = directory.parent(school, a)
    g3 = directory.parent(school, c)
    g4 = directory.parent(school, b)
    group = directory.group(school, "G", members=[a, b])
    post = _make_post(db_session, school, admin)
    return {
        "post": post, "group": group, "a": a, "b": b, "c": c,
        "g1": g1, "g2": g2, "g3": g3, "g4": g4,
    }


# ===========================================================================
# materialize
# ===========================================================================

class TestMaterialize:
    def test_three_recipient_scenario(self, db_session, school, scenario):
        post, group = scenario["post"], scenario["group"]
        a, b, c = scenario["a"], scenario["b"], scenario["c"]

        result = materialize(db_session, post.id, [c.id], [group.id], school.id)

        assert set(existing_recipients(db_session, post.id)) == {(a.id, group.id), (b.id, group.id), (c.id, None)}
        assert result.recipients_added == 3
        assert result.deliveries_added == 4

        rows = _deliveries(db_session, post.id)
        assert {(s, p) for s, _, p, _ in rows} == {
            (a.id, scenario["g1"].id),
            (a.id, scenario["g2"].id),
            (b.id, scenario["g4"].id),
            (c.id, scenario["g3"].id),
        }
        assert all(pending for *_, pending in rows)

    def test_direct_and_group_targeting_give_two_rows(self, db_session, directory, school, admin):
        a = directory.student(school)
        group = directory.group(school, members=[a])
        post = _make_post(db_session, school, admin)

        materialize(db_session, post.id, [a.id], [group.id], school.id)

        assert set(existing_recipients(db_session, post.id)) == {(a.id, None), (a.id, group.id)}

    def test_nested_groups_attribute_each_origin(self, db_session, directory, school, admin):
        a = directory.student(school)
        b = directory.student(school)
        parent_group = directory.group(school, "parent", members=[a])
        child_group = directory.group(school, "child", parent=parent_group, members=[a, b])
        post = _make_post(db_session, school, admin)

        materialize(db_session, post.id, [], [parent_group.id], school.id)

        assert set(existing_recipients(db_session, post.id)) == {
            (a.id, parent_group.id),
            (a.id, child_group.id),
            (b.id, child_group.id),
        }

    def test_no_duplicate_keys_and_full_guardian_coverage(self, db_session, directory, school, admin):
        students = [directory.student(school) for _ in range(4)]
        for i, student in enumerate(students):
            for _ in range(i % 3):
                directory.parent(school, student)
        g1 = directory.group(school, members=students[:3])
        directory.group(school, parent=g1, members=students[1:])
        post = _make_post(db_session, school, admin)

        materialize(db_session, post.id, [s.id for s in students], [g1.id, g1.id], school.id)
        materialize(db_session, post.id, [students[0].id], [g1.id], school.id)

        recipients = db_session.execute(
            select(PostStudent.id, PostStudent.student_id, PostStudent.group_id).where(PostStudent.post_id == post.id)
        ).all()
        keys = Counter((student_id, group_id) for _, student_id, group_id in recipients)
        assert all(count == 1 for count in keys.values())

        per_recipient = Counter(
            db_session.execute(
                select(PostParent.post_student_id).where(
                    PostParent.post_student_id.in_([r.id for r in recipients])
                )
            ).scalars().all()
        )
        for recipient_id, student_id, _ in recipients:
            expected = students.index(next(s for s in students if s.id == student_id)) % 3
            assert per_recipient.get(recipient_id, 0) == expected

    def test_rematerialize_adds_nothing(self, db_session, school, scenario):
        post, group, c = scenario["post"], scenario["group"], scenario["c"]
        materialize(db_session, post.id, [c.id], [group.id], school.id)

        again = materialize(db_session, post.id, [c.id], [group.id], school.id)

        assert again.recipients_added == 0
        assert again.deliveries_added == 0
        assert not again.changed

    def test_empty_targeting_is_not_an_error(self, db_session, school, admin):
        post = _make_post(db_session, school, admin)

        result = materialize(db_session, post.id, [], [], school.id)

        assert result.recipients_added == 0
        assert existing_recipients(db_session, post.id) == {}

    def test_empty_group_yields_no_rows(self, db_session, directory, school, admin):
        empty = directory.group(school, "empty")
        post = _make_post(db_session, school, admin)

        result = materialize(db_session, post.id, [], [empty.id], school.id)

        assert result.recipients_added == 0

    def test_ids_from_other_school_contribute_nothing(self, db_session, directory, school, admin):
        other = directory.school("Other")
        foreign_student = directory.student(other)
        foreign_group = directory.group(other, members=[directory.student(other)])
        post = _make_post(db_session, school, admin)

        result = materialize(db_session, post.id, [foreign_student.id], [foreign_group.id], school.id)

        assert result.recipients_added == 0


# ===========================================================================
# guardian link changes
# ===========================================================================

class TestGuardianBackfill:
    def test_backfill_adds_pending_row_on_every_recipient_row(self, db_session, directory, school, scenario):
        post, group, a = scenario["post"], scenario["group"], scenario["a"]
        materialize(db_session, post.id, [a.id], [group.id], school.id)
        newcomer = directory.parent(school, a)

        added = backfill_guardian(db_session, a.id, newcomer.id)

        assert added == 2
        rows = [r for r in _deliveries(db_session, post.id) if r.parent_id == newcomer.id]
        assert {r.group_id for r in rows} == {None, group.id}
        assert all(r.push_pending for r in rows)

    def test_backfill_is_idempotent(self, db_session, directory, school, scenario):
        post, a = scenario["post"], scenario["a"]
        materialize(db_session, post.id, [a.id], [], school.id)
        newcomer = directory.parent(school, a)
        backfill_guardian(db_session, a.id, newcomer.id)

        assert backfill_guardian(db_session, a.id, newcomer.id) == 0

    def test_backfill_requires_existing_link(self, db_session, directory, school, scenario):
        post, a = scenario["post"], scenario["a"]
        materialize(db_session, post.id, [a.id], [], school.id)
        stranger = directory.parent(school)

        assert backfill_guardian(db_session, a.id, stranger.id) == 0

    def test_drop_removes_only_that_guardian(self, db_session, school, scenario):
        post, group, a = scenario["post"], scenario["group"], scenario["a"]
        materialize(db_session, post.id, [], [group.id], school.id)

        removed = drop_guardian(db_session, a.id, scenario["g1"].id)

        assert removed == 1
        remaining = {r.parent_id for r in _deliveries(db_session, post.id)}
        assert scenario["g1"].id not in remaining
        assert scenario["g2"].id in remaining
