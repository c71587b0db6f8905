"""CSV bulk import of posts and the matching template download."""
from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.api.deps import Caller, get_caller, get_db
from app.core.errors import InvalidInputError, StorageFailureError
from app.core.settings import get_settings
from app.posts.csv_import import TEMPLATE_FILENAME, PostImporter, build_template_csv

router = APIRouter(prefix="/posts/import", tags=["posts"])

_CSV_CONTENT_TYPES = frozenset({"text/csv", "application/csv", "text/plain"})


def _is_csv(upload: UploadFile) -> bool:
    if upload.filename and upload.filename.lower().endswith(".csv"):
        return True
    return (upload.content_type or "").split(";")[0].strip() in _CSV_CONTENT_TYPES


@router.post("", summary="Import posts from CSV")
def import_posts(
    file: UploadFile | None = File(default=None),
    throw_in_error: bool = Form(default=False),
    with_csv: bool = Form(default=False),
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    if file is None:
        raise HTTPException(status_code=400, detail="file_missing")
    if not _is_csv(file):
        raise HTTPException(status_code=400, detail="invalid_file_type")

    data = file.file.read()
    if len(data) > get_settings().max_import_bytes:
        raise HTTPException(status_code=400, detail="file_too_large")

    importer = PostImporter(db, admin_id=caller.admin_id, school_id=caller.school_id)
    try:
        result = importer.run(data, throw_in_error=throw_in_error, with_csv=with_csv)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except StorageFailureError as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return JSONResponse(status_code=result.status_code, content=result.as_dict())


@router.get("/template", summary="Download the import CSV template")
def download_template(_: Caller = Depends(get_caller)):
    return Response(
        content=build_template_csv().encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"'},
    )
