"""Post service: the operations behind the ``/posts`` routes.

Every operation is scoped to the caller's school.  A post, group, student
or guardian outside that school is reported exactly like one that does not
exist.  Inputs are validated before anything is written; multi-statement
writes run inside ``atomic`` and are rolled back as a whole on failure.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.orm import Session

from app.core.errors import InvalidInputError, NotFoundError, StorageFailureError
from app.core.settings import get_settings
from app.core.validation import require_id_list, require_post_content
from app.db.models import Admin, Parent, Post, PostParent, PostStudent, Student, StudentGroup
from app.db.session import atomic
from app.posts.delivery import DeliveryTracker
from app.posts.hierarchy import groups_in_school
from app.posts.materializer import BULK, delete_recipients, materialize
from app.posts.membership import students_in_school
from app.posts.pagination import Page
from app.posts.resync import resync
from app.posts.stats import group_breakdown, post_read_counts, read_percent_by_post, student_breakdown
from app.storage.object_storage import ObjectStorage, decode_image, image_key, random_image_name

logger = logging.getLogger(__name__)

# Sentinel for "image not sent" on content edits; None means "remove".
UNSET = object()


@dataclass
class PostFilters:
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    sent_at_from: date | None = None
    sent_at_to: date | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _admin_dict(admin: Admin) -> dict:
    return {"id": admin.id, "given_name": admin.given_name, "family_name": admin.family_name}


class PostService:
    """Post lifecycle, targeting, recipients and retries for one request."""

    def __init__(self, db_session: Session, storage: ObjectStorage, per_page: int | None = None) -> None:
        self.db = db_session
        self.storage = storage
        settings = get_settings()
        self.per_page = per_page or settings.per_page
        self.max_image_bytes = settings.max_image_bytes
        self.tracker = DeliveryTracker(db_session)

    # -- lookups ------------------------------------------------------------

    def _get_post(self, post_id: int, school_id: int) -> Post:
        post = self.db.execute(
            select(Post).where(Post.id == post_id, Post.school_id == school_id)
        ).scalar_one_or_none()
        if post is None:
            raise NotFoundError("Post", post_id)
        return post

    def _get_group(self, group_id: int, school_id: int) -> StudentGroup:
        group = self.db.execute(
            select(StudentGroup).where(StudentGroup.id == group_id, StudentGroup.school_id == school_id)
        ).scalar_one_or_none()
        if group is None:
            raise NotFoundError("Group", group_id)
        return group

    def _get_student(self, student_id: int, school_id: int) -> Student:
        student = self.db.execute(
            select(Student).where(Student.id == student_id, Student.school_id == school_id)
        ).scalar_one_or_none()
        if student is None:
            raise NotFoundError("Student", student_id)
        return student

    def _get_guardian(self, parent_id: int, school_id: int) -> Parent:
        parent = self.db.execute(
            select(Parent).where(Parent.id == parent_id, Parent.school_id == school_id)
        ).scalar_one_or_none()
        if parent is None:
            raise NotFoundError("Parent", parent_id)
        return parent

    def _require_targets(
        self,
        student_ids: Iterable[object] | None,
        group_ids: Iterable[object] | None,
        school_id: int,
    ) -> tuple[list[int], list[int]]:
        students = require_id_list(student_ids, "students")
        groups = require_id_list(group_ids, "groups")

        missing_students = set(students) - students_in_school(self.db, students, school_id)
        if missing_students:
            raise NotFoundError("Student", sorted(missing_students))
        missing_groups = set(groups) - groups_in_school(self.db, groups, school_id)
        if missing_groups:
            raise NotFoundError("Group", sorted(missing_groups))
        return students, groups

    # -- images -------------------------------------------------------------

    def _upload_image(self, data_uri: str) -> str:
        payload = decode_image(data_uri, self.max_image_bytes)
        name = random_image_name(payload)
        if not self.storage.upload_file(payload.data, payload.mime_type, image_key(name)):
            raise StorageFailureError("image_upload_failed")
        return name

    def _discard_image(self, name: str | None) -> None:
        if name and not self.storage.delete_file(image_key(name)):
            logger.warning("Could not delete image %s", name)

    # -- create / edit / delete ---------------------------------------------

    def create_post(
        self,
        admin_id: int,
        school_id: int,
        title: str,
        description: str,
        priority: str,
        student_ids: Iterable[object] | None = None,
        group_ids: Iterable[object] | None = None,
        image: str | None = None,
    ) -> dict:
        """Create a post and fan it out to its recipients in one transaction."""
        require_post_content(title, description, priority)
        students, groups = self._require_targets(student_ids, group_ids, school_id)

        image_name = self._upload_image(image) if image else None
        try:
            with atomic(self.db):
                post = Post(
                    title=title.strip(),
                    description=description,
                    priority=priority,
                    admin_id=admin_id,
                    school_id=school_id,
                    image=image_name,
                )
                self.db.add(post)
                self.db.flush()
                post_id = post.id
                fan_out = materialize(self.db, post_id, students, groups, school_id)
        except Exception:
            self._discard_image(image_name)
            raise

        logger.info("Created post=%s school=%s", post_id, school_id)
        return {
            "post": {
                "id": post_id,
                "title": title.strip(),
                "description": description,
                "priority": priority,
                "image": image_name,
            },
            "recipients": fan_out.recipients_added,
            "deliveries": fan_out.deliveries_added,
        }

    def update_post(
        self,
        post_id: int,
        school_id: int,
        title: str,
        description: str,
        priority: str,
        image: object = UNSET,
    ) -> dict:
        """Edit post content and re-queue every unread delivery.

        *image*: ``UNSET`` or ``""`` keeps the current image, ``None``
        removes it, the current name (or a URL containing it) keeps it,
        anything else must be a base64 data URI and replaces it.
        """
        require_post_content(title, description, priority)
        post = self._get_post(post_id, school_id)

        old_image = post.image
        new_image = old_image
        if image is None:
            new_image = None
        elif isinstance(image, str):
            candidate = image.strip()
            keeps_current = candidate == "" or (old_image and old_image in candidate)
            if not keeps_current:
                new_image = self._upload_image(candidate)

        try:
            with atomic(self.db):
                post = self._get_post(post_id, school_id)
                post.title = title.strip()
                post.description = description
                post.priority = priority
                post.image = new_image
                post.edited_at = datetime.now(timezone.utc)
                self.db.flush()
                requeued = self.tracker.reset_for_content_edit(post_id)
        except Exception:
            if new_image != old_image:
                self._discard_image(new_image)
            raise

        if new_image != old_image:
            self._discard_image(old_image)
        logger.info("Updated post=%s requeued=%d", post_id, requeued)
        return {"message": "post_updated", "requeued": requeued}

    def _delete_posts(self, posts: list[Post]) -> int:
        images = [post.image for post in posts]
        post_ids = [post.id for post in posts]
        with atomic(self.db):
            recipient_ids = self.db.execute(
                select(PostStudent.id).where(PostStudent.post_id.in_(post_ids))
            ).scalars().all()
            delete_recipients(self.db, recipient_ids)
            self.db.execute(delete(Post).where(Post.id.in_(post_ids)), execution_options=BULK)
        for name in images:
            self._discard_image(name)
        logger.info("Deleted posts=%s", post_ids)
        return len(post_ids)

    def delete_post(self, post_id: int, school_id: int) -> dict:
        post = self._get_post(post_id, school_id)
        self._delete_posts([post])
        return {"message": "post_deleted"}

    def delete_posts(self, post_ids: Iterable[object], school_id: int) -> dict:
        ids = require_id_list(post_ids, "post_ids")
        if not ids:
            raise InvalidInputError("invalid_or_missing_post_ids", field="post_ids")
        posts = list(
            self.db.execute(
                select(Post).where(Post.school_id == school_id, Post.id.in_(ids))
            ).scalars().all()
        )
        if not posts:
            raise NotFoundError("Post", ids)
        deleted = self._delete_posts(posts)
        return {"message": "posts_deleted", "deleted_count": deleted}

    # -- targeting ----------------------------------------------------------

    def update_targeting(
        self,
        post_id: int,
        school_id: int,
        student_ids: Iterable[object] | None,
        group_ids: Iterable[object] | None,
    ) -> dict:
        """Replace the post's targeting; only the difference is written."""
        self._get_post(post_id, school_id)
        students, groups = self._require_targets(student_ids, group_ids, school_id)
        result = resync(self.db, post_id, students, groups, school_id)
        return {
            "message": "post_senders_updated",
            "added": result.recipients_added,
            "removed": result.recipients_removed,
        }

    # -- read side ----------------------------------------------------------

    def get_post_detail(self, post_id: int, school_id: int) -> dict:
        post = self._get_post(post_id, school_id)
        counts = post_read_counts(self.db, post_id)
        return {
            "post": {
                "id": post.id,
                "title": post.title,
                "description": post.description,
                "image": post.image,
                "priority": post.priority,
                "sent_at": _iso(post.sent_at),
                "edited_at": _iso(post.edited_at),
                "read_count": counts.read_count,
                "unread_count": counts.unread_count,
            },
            "admin": _admin_dict(post.admin),
        }

    def list_posts(self, school_id: int, page: int = 1, filters: PostFilters | None = None) -> dict:
        """Newest first, with ``read_percent`` per post."""
        filters = filters or PostFilters()
        clauses = [Post.school_id == school_id]
        if filters.title:
            clauses.append(Post.title.like(f"%{filters.title}%"))
        if filters.description:
            clauses.append(Post.description.like(f"%{filters.description}%"))
        if filters.priority:
            clauses.append(Post.priority == filters.priority)
        if filters.sent_at_from:
            clauses.append(func.date(Post.sent_at) >= filters.sent_at_from.isoformat())
        if filters.sent_at_to:
            clauses.append(func.date(Post.sent_at) <= filters.sent_at_to.isoformat())

        total = self.db.execute(select(func.count(Post.id)).where(*clauses)).scalar_one()
        pagination = Page(page=page, per_page=self.per_page, total=total).validate()

        posts = self.db.execute(
            select(Post)
            .where(*clauses)
            .order_by(Post.sent_at.desc(), Post.id.desc())
            .offset(pagination.offset)
            .limit(pagination.per_page)
        ).scalars().all()
        percents = read_percent_by_post(self.db, [post.id for post in posts])

        return {
            "posts": [
                {
                    "id": post.id,
                    "title": post.title,
                    "description": post.description,
                    "priority": post.priority,
                    "sent_at": _iso(post.sent_at),
                    "edited_at": _iso(post.edited_at),
                    "read_percent": percents.get(post.id, 0),
                    "admin": _admin_dict(post.admin),
                }
                for post in posts
            ],
            "pagination": pagination.as_dict(),
        }

    def _recipient_clauses(
        self,
        post_id: int,
        group_id: int | None,
        email: str | None,
        student_number: str | None,
    ) -> list:
        clauses = [PostStudent.post_id == post_id]
        if group_id is not None:
            clauses.append(PostStudent.group_id == group_id)
        if email:
            clauses.append(Student.email.like(f"%{email}%"))
        if student_number:
            clauses.append(Student.student_number.like(f"%{student_number}%"))
        return clauses

    def _with_guardians(self, post_id: int, students: list[Student], group_id: int | None = None) -> list[dict]:
        """Attach origin groups and per-guardian read state to *students*.

        A guardian reached through several recipient rows of the same
        student counts as read once any of those deliveries is read; the
        earliest ``viewed_at`` is reported.  The per-student ``read_count`` and
        ``unread_count`` use the post-level counting rule.
        """
        ids = [student.id for student in students]
        if not ids:
            return []
        scope = [PostStudent.post_id == post_id, PostStudent.student_id.in_(ids)]
        if group_id is not None:
            scope.append(PostStudent.group_id == group_id)

        origins: dict[int, list[int | None]] = defaultdict(list)
        for student_id, origin in self.db.execute(
            select(PostStudent.student_id, PostStudent.group_id).where(*scope).order_by(PostStudent.id)
        ).all():
            origins[student_id].append(origin)

        guardians: dict[int, dict[int, dict]] = defaultdict(dict)
        rows = self.db.execute(
            select(
                PostStudent.student_id,
                Parent.id,
                Parent.given_name,
                Parent.family_name,
                PostParent.id,
                PostParent.viewed_at,
            )
            .join(PostParent, PostParent.post_student_id == PostStudent.id)
            .join(Parent, Parent.id == PostParent.parent_id)
            .where(*scope)
            .order_by(Parent.id, PostParent.id)
        ).all()
        for student_id, parent_id, given_name, family_name, delivery_id, viewed_at in rows:
            entry = guardians[student_id].setdefault(
                parent_id,
                {
                    "id": parent_id,
                    "given_name": given_name,
                    "family_name": family_name,
                    "delivery_ids": [],
                    "viewed_at": None,
                },
            )
            entry["delivery_ids"].append(delivery_id)
            if viewed_at is not None and (entry["viewed_at"] is None or viewed_at < entry["viewed_at"]):
                entry["viewed_at"] = viewed_at

        counts = student_breakdown(self.db, post_id, ids, group_id)
        result = []
        for student in students:
            parents = [
                {**entry, "viewed_at": _iso(entry["viewed_at"])}
                for entry in guardians.get(student.id, {}).values()
            ]
            result.append(
                {
                    "id": student.id,
                    "email": student.email,
                    "phone_number": student.phone_number,
                    "given_name": student.given_name,
                    "family_name": student.family_name,
                    "student_number": student.student_number,
                    "direct": None in origins.get(student.id, []),
                    "group_ids": [origin for origin in origins.get(student.id, []) if origin is not None],
                    "read_count": counts[student.id].read_count,
                    "unread_count": counts[student.id].unread_count,
                    "parents": parents,
                }
            )
        return result

    def _page_recipients(
        self,
        post_id: int,
        page: int,
        group_id: int | None,
        email: str | None,
        student_number: str | None,
    ) -> tuple[list[dict], Page]:
        clauses = self._recipient_clauses(post_id, group_id, email, student_number)
        total = self.db.execute(
            select(func.count(distinct(Student.id)))
            .select_from(Student)
            .join(PostStudent, PostStudent.student_id == Student.id)
            .where(*clauses)
        ).scalar_one()
        pagination = Page(page=page, per_page=self.per_page, total=total).validate()

        students = list(
            self.db.execute(
                select(Student)
                .join(PostStudent, PostStudent.student_id == Student.id)
                .where(*clauses)
                .distinct()
                .order_by(Student.given_name, Student.family_name, Student.id)
                .offset(pagination.offset)
                .limit(pagination.per_page)
            ).scalars().all()
        )
        return self._with_guardians(post_id, students, group_id), pagination

    def list_recipients(
        self,
        post_id: int,
        school_id: int,
        page: int = 1,
        email: str | None = None,
        student_number: str | None = None,
    ) -> dict:
        self._get_post(post_id, school_id)
        students, pagination = self._page_recipients(post_id, page, None, email, student_number)
        return {"students": students, "pagination": pagination.as_dict()}

    def get_recipient(self, post_id: int, school_id: int, student_id: int, group_id: int | None = None) -> dict:
        """One targeted student with guardian read states; optionally only via *group_id*."""
        self._get_post(post_id, school_id)
        clauses = [PostStudent.post_id == post_id, Student.id == student_id, Student.school_id == school_id]
        if group_id is not None:
            clauses.append(PostStudent.group_id == group_id)
        student = self.db.execute(
            select(Student).join(PostStudent, PostStudent.student_id == Student.id).where(*clauses).limit(1)
        ).scalar_one_or_none()
        if student is None:
            raise NotFoundError("Student", student_id)
        return {"student": self._with_guardians(post_id, [student], group_id)[0]}

    def list_groups(self, post_id: int, school_id: int, page: int = 1, name: str | None = None) -> dict:
        self._get_post(post_id, school_id)
        _, total = group_breakdown(self.db, post_id, name_filter=name, limit=0)
        pagination = Page(page=page, per_page=self.per_page, total=total).validate()
        groups, _ = group_breakdown(
            self.db, post_id, name_filter=name, limit=pagination.per_page, offset=pagination.offset,
        )
        return {"groups": groups, "pagination": pagination.as_dict()}

    def list_group_recipients(
        self,
        post_id: int,
        school_id: int,
        group_id: int,
        page: int = 1,
        email: str | None = None,
        student_number: str | None = None,
    ) -> dict:
        self._get_post(post_id, school_id)
        group = self._get_group(group_id, school_id)
        students, pagination = self._page_recipients(post_id, page, group_id, email, student_number)
        return {
            "group": {"id": group.id, "name": group.name},
            "students": students,
            "pagination": pagination.as_dict(),
        }

    def get_group_recipient(self, post_id: int, school_id: int, group_id: int, student_id: int) -> dict:
        group = self._get_group(group_id, school_id)
        result = self.get_recipient(post_id, school_id, student_id, group_id=group_id)
        return {"group": {"id": group.id, "name": group.name}, **result}

    # -- delivery -----------------------------------------------------------

    def retry_group(self, post_id: int, school_id: int, group_id: int) -> dict:
        self._get_post(post_id, school_id)
        self._get_group(group_id, school_id)
        with atomic(self.db):
            updated = self.tracker.retry_for_group(post_id, group_id)
        return {"message": "push_reset_for_group", "updated": updated}

    def retry_student(self, post_id: int, school_id: int, student_id: int) -> dict:
        self._get_post(post_id, school_id)
        self._get_student(student_id, school_id)
        with atomic(self.db):
            updated = self.tracker.retry_for_student(post_id, student_id)
        return {"message": "push_reset_for_student", "updated": updated}

    def retry_guardian(self, post_id: int, school_id: int, parent_id: int) -> dict:
        self._get_post(post_id, school_id)
        self._get_guardian(parent_id, school_id)
        with atomic(self.db):
            updated = self.tracker.retry_for_guardian(post_id, parent_id)
        return {"message": "push_reset_for_parent", "updated": updated}

    def record_view(self, post_id: int, delivery_id: int, guardian_id: int, student_id: int) -> dict:
        """Guardian view; repeat calls keep the first ``viewed_at``."""
        with atomic(self.db):
            record = self.tracker.record_view(delivery_id, guardian_id, student_id, post_id=post_id)
            viewed_at = record.viewed_at
        return {"id": delivery_id, "viewed_at": _iso(viewed_at)}

    def record_views(self, post_id: int, delivery_ids: Iterable[object], guardian_id: int, student_id: int) -> dict:
        """Batch guardian view over the post's deliveries; already-read IDs are skipped."""
        ids = require_id_list(delivery_ids, "delivery_ids")
        if not ids:
            raise InvalidInputError("invalid_or_missing_delivery_ids", field="delivery_ids")
        with atomic(self.db):
            updated = self.tracker.record_views(guardian_id, student_id, ids, post_id=post_id)
        return {"message": "posts_viewed", "updated": updated}
