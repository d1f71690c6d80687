from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from upload_scanner.core.config import settings
from upload_scanner.core.database import get_db
from upload_scanner.schemas.upload import UploadCompletedIn, UploadRegisteredOut
from upload_scanner.services.uploads import DuplicateUploadError, register_completed_upload


router = APIRouter(prefix="/internal/uploads", tags=["internal"], include_in_schema=False)

logger = logging.getLogger(__name__)


def _require_internal_token(x_internal_token: str | None) -> None:
    """
    Shared-secret auth for upload transport -> backend callbacks.
    """
    if not settings.UPLOAD_CALLBACK_SHARED_SECRET:
        raise HTTPException(status_code=500, detail="Server missing UPLOAD_CALLBACK_SHARED_SECRET")

    if not x_internal_token or not hmac.compare_digest(x_internal_token, settings.UPLOAD_CALLBACK_SHARED_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/complete", status_code=status.HTTP_201_CREATED, response_model=UploadRegisteredOut)
def post_upload_complete(
    payload: UploadCompletedIn,
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
    db: Session = Depends(get_db),
):
    """
    Called by the upload transport once a file is fully assembled in object storage.
    Creates the Upload row and its virus-scan job in one transaction.
    """
    _require_internal_token(x_internal_token)

    try:
        registered = register_completed_upload(
            db,
            file_id=payload.file_id,
            subject=payload.subject,
            original_filename=payload.original_filename,
            object_key=payload.object_key,
        )
    except DuplicateUploadError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return UploadRegisteredOut(
        upload_id=registered.upload.id,
        file_id=registered.upload.file_id,
        object_key=registered.upload.object_key,
        job_id=registered.job.id,
        job_status=registered.job.status.value,
    )
