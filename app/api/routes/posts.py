"""Post routes: lifecycle, targeting, recipient views, retries and views.

Every route acts inside the caller's school.  Service errors map to HTTP
as NotFound -> 404, InvalidInput -> 400, StorageFailure -> 500.
"""
from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.deps import Caller, get_caller, get_post_service
from app.core.errors import InvalidInputError, NotFoundError, ServiceError, StorageFailureError
from app.posts.service import UNSET, PostFilters, PostService

router = APIRouter(prefix="/posts", tags=["posts"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreatePostBody(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    # IDs are validated by the service so malformed values come back as 400
    students: list[Any] | None = None
    groups: list[Any] | None = None
    image: str | None = None


class UpdatePostBody(BaseModel):
    title: str | None = None
    description: str | None = None
    priority: str | None = None
    image: str | None = None


class DeletePostsBody(BaseModel):
    post_ids: list[Any] | None = None


class SendersBody(BaseModel):
    students: list[Any] | None = None
    groups: list[Any] | None = None


class ViewBody(BaseModel):
    parent_id: int
    student_id: int


class BatchViewBody(BaseModel):
    parent_id: int
    student_id: int
    delivery_ids: list[Any] | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _http_error(exc: ServiceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidInputError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, StorageFailureError):
        return HTTPException(status_code=500, detail=exc.message)
    return HTTPException(status_code=500, detail="server_error")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("", status_code=201, summary="Create a post and fan it out")
def create_post(
    body: CreatePostBody,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.create_post(
            admin_id=caller.admin_id,
            school_id=caller.school_id,
            title=body.title,
            description=body.description,
            priority=body.priority,
            student_ids=body.students,
            group_ids=body.groups,
            image=body.image,
        )
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("", summary="List posts, newest first")
def list_posts(
    page: int = Query(default=1),
    title: str | None = None,
    description: str | None = None,
    priority: str | None = None,
    sent_at_from: date | None = None,
    sent_at_to: date | None = None,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    filters = PostFilters(
        title=title,
        description=description,
        priority=priority,
        sent_at_from=sent_at_from,
        sent_at_to=sent_at_to,
    )
    try:
        return service.list_posts(caller.school_id, page=page, filters=filters)
    except ServiceError as exc:
        raise _http_error(exc)


@router.post("/delete-multiple", summary="Delete several posts")
def delete_posts(
    body: DeletePostsBody,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.delete_posts(body.post_ids, caller.school_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("/{post_id}", summary="Post detail with read counts")
def get_post(
    post_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.get_post_detail(post_id, caller.school_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.put("/{post_id}", summary="Edit post content and re-queue unread deliveries")
def update_post(
    post_id: int,
    body: UpdatePostBody,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    image = body.image if "image" in body.model_fields_set else UNSET
    try:
        return service.update_post(
            post_id,
            caller.school_id,
            title=body.title,
            description=body.description,
            priority=body.priority,
            image=image,
        )
    except ServiceError as exc:
        raise _http_error(exc)


@router.delete("/{post_id}", summary="Delete a post")
def delete_post(
    post_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.delete_post(post_id, caller.school_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.put("/{post_id}/sender", summary="Replace post targeting")
def update_senders(
    post_id: int,
    body: SendersBody,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.update_targeting(post_id, caller.school_id, body.students, body.groups)
    except ServiceError as exc:
        raise _http_error(exc)


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

@router.get("/{post_id}/students", summary="Recipient students with guardian read state")
def list_students(
    post_id: int,
    page: int = Query(default=1),
    email: str | None = None,
    student_number: str | None = None,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.list_recipients(
            post_id, caller.school_id, page=page, email=email, student_number=student_number,
        )
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("/{post_id}/students/{student_id}", summary="One recipient student")
def get_student(
    post_id: int,
    student_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.get_recipient(post_id, caller.school_id, student_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("/{post_id}/groups", summary="Origin groups with viewed / not viewed counts")
def list_groups(
    post_id: int,
    page: int = Query(default=1),
    name: str | None = None,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.list_groups(post_id, caller.school_id, page=page, name=name)
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("/{post_id}/groups/{group_id}", summary="Recipient students reached through a group")
def list_group_students(
    post_id: int,
    group_id: int,
    page: int = Query(default=1),
    email: str | None = None,
    student_number: str | None = None,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.list_group_recipients(
            post_id, caller.school_id, group_id, page=page, email=email, student_number=student_number,
        )
    except ServiceError as exc:
        raise _http_error(exc)


@router.get("/{post_id}/groups/{group_id}/students/{student_id}", summary="One student of a group")
def get_group_student(
    post_id: int,
    group_id: int,
    student_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.get_group_recipient(post_id, caller.school_id, group_id, student_id)
    except ServiceError as exc:
        raise _http_error(exc)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

@router.post("/{post_id}/groups/{group_id}/retry", summary="Re-queue unread deliveries of a group")
def retry_group(
    post_id: int,
    group_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.retry_group(post_id, caller.school_id, group_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.post("/{post_id}/students/{student_id}/retry", summary="Re-queue unread deliveries of a student")
def retry_student(
    post_id: int,
    student_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.retry_student(post_id, caller.school_id, student_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.post("/{post_id}/parents/{parent_id}/retry", summary="Re-queue unread deliveries of a guardian")
def retry_parent(
    post_id: int,
    parent_id: int,
    caller: Caller = Depends(get_caller),
    service: PostService = Depends(get_post_service),
):
    try:
        return service.retry_guardian(post_id, caller.school_id, parent_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.post("/{post_id}/deliveries/{delivery_id}/view", summary="Record a guardian view")
def record_view(
    post_id: int,
    delivery_id: int,
    body: ViewBody,
    service: PostService = Depends(get_post_service),
):
    try:
        return service.record_view(post_id, delivery_id, body.parent_id, body.student_id)
    except ServiceError as exc:
        raise _http_error(exc)


@router.post("/{post_id}/deliveries/view", summary="Record a guardian view of several deliveries")
def record_views(
    post_id: int,
    body: BatchViewBody,
    service: PostService = Depends(get_post_service),
):
    try:
        return service.record_views(post_id, body.delivery_ids, body.parent_id, body.student_id)
    except ServiceError as exc:
        raise _http_error(exc)
