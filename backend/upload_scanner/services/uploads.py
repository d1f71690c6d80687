from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from upload_scanner.core.config import settings
from upload_scanner.models.job import Job, JobType, utcnow
from upload_scanner.models.upload import Upload
from upload_scanner.models.user import User
from upload_scanner.services import job_queue


logger = logging.getLogger(__name__)

# file_id names a scratch file and, with subject, an object key segment: no separators, no leading dot.
SAFE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.@|-]*$"
_SAFE_ID_RE = re.compile(SAFE_ID_PATTERN)


class DuplicateUploadError(Exception):
    pass


@dataclass
class RegisteredUpload:
    upload: Upload
    job: Job


def build_temp_key(subject: str, file_id: str) -> str:
    return f"{settings.S3_TEMP_PREFIX}/{subject}/{file_id}"


def build_scanned_key(subject: str, file_id: str) -> str:
    return f"{settings.S3_SCANNED_PREFIX}/{subject}/{file_id}"


def get_or_create_user(db: Session, subject: str) -> User:
    user = db.query(User).filter(User.sub == subject).first()
    if user:
        return user
    user = User(sub=subject)
    db.add(user)
    db.flush()
    logger.info("Created user for subject %s", subject)
    return user


def register_completed_upload(
    db: Session,
    *,
    file_id: str,
    subject: str,
    original_filename: str,
    object_key: str | None = None,
) -> RegisteredUpload:
    """
    Record a fully assembled upload and enqueue its virus scan. The Upload and its Job are
    committed together or not at all.
    """
    file_id = (file_id or "").strip()
    subject = (subject or "").strip()
    if not file_id:
        raise ValueError("file_id is required")
    if not subject:
        raise ValueError("subject is required")
    if not _SAFE_ID_RE.fullmatch(file_id):
        raise ValueError(f"file_id contains unsupported characters: {file_id!r}")
    if not _SAFE_ID_RE.fullmatch(subject):
        raise ValueError(f"subject contains unsupported characters: {subject!r}")

    if db.query(Upload.id).filter(Upload.file_id == file_id).first():
        raise DuplicateUploadError(f"Upload with file_id {file_id} already exists")

    try:
        user = get_or_create_user(db, subject)
        upload = Upload(
            file_id=file_id,
            owner_user_id=user.id,
            original_filename=(original_filename or "").strip() or "unknown",
            object_key=object_key or build_temp_key(subject, file_id),
            uploaded_at=utcnow(),
        )
        db.add(upload)
        db.flush()

        job = job_queue.enqueue(db, JobType.virus_scan, {"upload_id": upload.id})
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        # Lost a race with a concurrent callback for the same file_id.
        raise DuplicateUploadError(f"Upload with file_id {file_id} already exists") from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Registered upload %s (file_id=%s) and enqueued job %s",
        upload.id,
        file_id,
        job.id,
        extra={"upload_id": upload.id, "job_id": job.id},
    )
    return RegisteredUpload(upload=upload, job=job)
