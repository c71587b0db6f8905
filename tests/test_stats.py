"""Tests for app/posts/stats.py."""
from __future__ import annotations

import pytest
from sqlalchemy import select

from app.db.models import Post, PostParent, PostStudent
from app.posts.delivery import DeliveryTracker
from app.posts.materializer import materialize
from app.posts.stats import (
    ReadCounts,
    group_breakdown,
    post_read_counts,
    read_percent,
    read_percent_by_post,
    student_breakdown,
)


def _make_post(db_session, school, admin) -> Post:
    post = Post(school_id=school.id, admin_id=admin.id, title="Notice", description="body", priority="low")
    db_session.add(post)
    db_session.flush()
    return post


def _view(db_session, post_id, student_id, parent_id, group_id=None):
    stmt = (
        select(PostParent.id)
        .join(PostStudent, PostStudent.id == PostParent.post_student_id)
        .where(
            PostStudent.post_id == post_id,
            PostStudent.student_id == student_id,
            PostParent.parent_id == parent_id,
        )
    )
    stmt = stmt.where(PostStudent.group_id.is_(None) if group_id is None else PostStudent.group_id == group_id)
    delivery_id = db_session.execute(stmt).scalar_one()
    DeliveryTracker(db_session).record_view(delivery_id, parent_id, student_id)


@pytest.fixture()
def posted(db_session, directory, school, admin):
    """Group X = {A, B}, group Y = {C}; A has P1 and P2, B has P2, C has P3."""
    a = directory.student(school)
    b = directory.student(school)
    c = directory.student(school)
    p1 = directory.parent(school, a)
    p2 = directory.parent(school, a, b)
    p3 = directory.parent(school, c)
    x = directory.group(school, "X", members=[a, b])
    y = directory.group(school, "Y", members=[c])
    post = _make_post(db_session, school, admin)
    materialize(db_session, post.id, [], [x.id, y.id], school.id)
    return {"post": post, "x": x, "y": y, "a": a, "b": b, "c": c, "p1": p1, "p2": p2, "p3": p3}


class TestReadPercent:
    def test_zero_targeted_is_zero(self):
        assert read_percent(0, 0) == 0

    def test_rounds_to_two_places(self):
        assert read_percent(1, 3) == 33.33

    def test_post_without_recipients_is_zero(self, db_session, school, admin):
        post = _make_post(db_session, school, admin)

        assert read_percent_by_post(db_session, [post.id]) == {post.id: 0}

    def test_hundred_when_every_student_has_a_reader(self, db_session, posted):
        post = posted["post"]
        _view(db_session, post.id, posted["a"].id, posted["p1"].id, posted["x"].id)
        _view(db_session, post.id, posted["b"].id, posted["p2"].id, posted["x"].id)
        _view(db_session, post.id, posted["c"].id, posted["p3"].id, posted["y"].id)

        assert read_percent_by_post(db_session, [post.id]) == {post.id: 100}

    def test_partial(self, db_session, posted):
        post = posted["post"]
        _view(db_session, post.id, posted["a"].id, posted["p1"].id, posted["x"].id)

        assert read_percent_by_post(db_session, [post.id]) == {post.id: 33.33}

    def test_student_without_guardians_counts_as_targeted(self, db_session, directory, school, admin):
        reader = directory.student(school)
        parent = directory.parent(school, reader)
        orphan = directory.student(school)
        post = _make_post(db_session, school, admin)
        materialize(db_session, post.id, [reader.id, orphan.id], [], school.id)
        _view(db_session, post.id, reader.id, parent.id)

        assert read_percent_by_post(db_session, [post.id]) == {post.id: 50}


class TestCounts:
    def test_distinct_guardian_counts(self, db_session, posted):
        post = posted["post"]
        assert post_read_counts(db_session, post.id) == ReadCounts(read_count=0, unread_count=3)

        # P2 reads for B but still has an unread row for A
        _view(db_session, post.id, posted["b"].id, posted["p2"].id, posted["x"].id)

        assert post_read_counts(db_session, post.id) == ReadCounts(read_count=1, unread_count=3)

    def test_group_breakdown(self, db_session, posted):
        post = posted["post"]
        _view(db_session, post.id, posted["c"].id, posted["p3"].id, posted["y"].id)

        rows, total = group_breakdown(db_session, post.id)

        assert total == 2
        assert rows == [
            {"id": posted["x"].id, "name": "X", "viewed_count": 0, "not_viewed_count": 2},
            {"id": posted["y"].id, "name": "Y", "viewed_count": 1, "not_viewed_count": 0},
        ]

    def test_group_breakdown_filter_and_page(self, db_session, posted):
        rows, total = group_breakdown(db_session, posted["post"].id, name_filter="Y")
        assert total == 1
        assert [r["name"] for r in rows] == ["Y"]

        rows, total = group_breakdown(db_session, posted["post"].id, limit=1, offset=1)
        assert total == 2
        assert [r["name"] for r in rows] == ["Y"]

    def test_student_breakdown(self, db_session, posted):
        post = posted["post"]
        _view(db_session, post.id, posted["a"].id, posted["p1"].id, posted["x"].id)
        ids = [posted["a"].id, posted["b"].id, posted["c"].id]

        counts = student_breakdown(db_session, post.id, ids)

        assert counts[posted["a"].id] == ReadCounts(read_count=1, unread_count=1)
        assert counts[posted["b"].id] == ReadCounts(read_count=0, unread_count=1)
        assert counts[posted["c"].id] == ReadCounts(read_count=0, unread_count=1)
        assert student_breakdown(db_session, post.id, ids, group_id=posted["y"].id)[posted["a"].id] == ReadCounts()
