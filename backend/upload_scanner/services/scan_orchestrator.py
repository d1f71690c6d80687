"""
Per-job processing for ``virus-scan`` jobs.

downloading -> (validating) -> scanning -> recording -> relocating -> done

The scan outcome is committed (``Upload.scanned_at``) before the object is relocated. A job
that is delivered again after a crash therefore skips straight to relocation, which is
itself safe to repeat: copy is skipped when the destination already exists and the source is
only deleted once the destination is confirmed.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.orm import Session

from upload_scanner.core.config import settings
from upload_scanner.models.job import Job, JobStage, utcnow
from upload_scanner.models.upload import Upload
from upload_scanner.services import archive_validator, job_queue
from upload_scanner.services import s3 as storage
from upload_scanner.services.archive_validator import ArchiveValidationError
from upload_scanner.services.scan_engine import ScanEngineError, Scanner
from upload_scanner.services.uploads import build_scanned_key


logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    pass


class InvalidJobPayloadError(ProcessingError):
    pass


class UploadNotFoundError(ProcessingError):
    pass


class RelocationError(ProcessingError):
    pass


class UnsafeFileIdError(ProcessingError):
    pass


def is_transient_error(exc: BaseException) -> bool:
    """
    Errors worth another attempt: storage, scan engine and local I/O. Validation and
    data-integrity errors will fail the same way every time.
    """
    if isinstance(exc, (ArchiveValidationError, ProcessingError)):
        return False
    return isinstance(exc, (ClientError, BotoCoreError, ScanEngineError, OSError))


def clip_scan_report(raw: str | None, *, max_len: int | None = None) -> str | None:
    if raw is None:
        return None
    limit = max_len if max_len is not None else settings.SCAN_REPORT_MAX_LENGTH
    s = raw.replace("\0", "").strip()
    if len(s) <= limit:
        return s
    return s[: limit - 3] + "..."


@dataclass(frozen=True)
class ScratchPaths:
    local_path: Path
    extract_dir: Path

    @classmethod
    def for_file(cls, scan_directory: Path, file_id: str) -> ScratchPaths:
        # Named by file_id, never by the user-supplied filename.
        local_path = scan_directory / file_id
        if not file_id or local_path.resolve().parent != scan_directory.resolve():
            raise UnsafeFileIdError(f"file_id {file_id!r} does not name a file inside {scan_directory}")
        return cls(
            local_path=local_path,
            extract_dir=scan_directory / f"{file_id}_extract",
        )

    def cleanup(self) -> None:
        try:
            if self.local_path.exists():
                os.unlink(self.local_path)
        except OSError:
            logger.warning("Failed to delete file %s", self.local_path, exc_info=True)
        try:
            if self.extract_dir.exists():
                shutil.rmtree(self.extract_dir)
        except OSError:
            logger.warning("Failed to delete directory %s", self.extract_dir, exc_info=True)


def parse_upload_id(job: Job) -> int:
    payload = job.payload if isinstance(job.payload, dict) else None
    raw = (payload or {}).get("upload_id")
    if isinstance(raw, bool) or raw is None:
        raise InvalidJobPayloadError(f"Job {job.id} payload has no upload_id")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidJobPayloadError(f"Job {job.id} payload has invalid upload_id: {raw!r}") from exc


class ScanOrchestrator:
    def __init__(self, scanner: Scanner, *, scan_directory: Path | str | None = None) -> None:
        self.scanner = scanner
        self.scan_directory = Path(scan_directory or settings.SCAN_DIRECTORY)

    def process(self, db: Session, job: Job, *, worker_id: str | None = None) -> Upload:
        """
        Run ``job`` to completion. ``worker_id`` defaults to the current lease holder; every
        job update is fenced on it (LeaseLostError if the job was taken over meanwhile).
        """
        worker_id = worker_id or job.locked_by
        upload_id = parse_upload_id(job)

        upload = db.get(Upload, upload_id)
        if upload is None:
            logger.warning("Upload %s not found for job %s", upload_id, job.id)
            raise UploadNotFoundError(f"Upload {upload_id} not found")

        logger.info(
            "Processing job %s for upload %s (file_id=%s, original_name=%s)",
            job.id,
            upload.id,
            upload.file_id,
            upload.original_filename,
            extra={"job_id": job.id, "upload_id": upload.id},
        )

        self.scan_directory.mkdir(parents=True, exist_ok=True)
        paths = ScratchPaths.for_file(self.scan_directory, upload.file_id)
        try:
            if upload.scanned_at is None:
                self._scan(db, job, upload, paths, worker_id)
            else:
                logger.info("Upload %s already scanned; resuming relocation", upload.id)

            job_queue.set_stage(db, job, JobStage.relocating, worker_id=worker_id)
            upload.object_key = self._relocate(upload)
            job_queue.complete(db, job, worker_id=worker_id)
        finally:
            logger.debug("Cleaning up %s and %s", paths.local_path, paths.extract_dir)
            paths.cleanup()

        return upload

    def _scan(self, db: Session, job: Job, upload: Upload, paths: ScratchPaths, worker_id: str) -> None:
        job_queue.set_stage(db, job, JobStage.downloading, worker_id=worker_id)
        storage.download_to_path(upload.object_key, paths.local_path)

        if archive_validator.is_container_filename(upload.original_filename):
            job_queue.set_stage(db, job, JobStage.validating, worker_id=worker_id)
            extracted = archive_validator.extract_and_validate(paths.local_path, paths.extract_dir)
            archive_validator.validate_dicom_files(extracted)

        # Containers are scanned as a whole; the engine unpacks them itself.
        job_queue.set_stage(db, job, JobStage.scanning, worker_id=worker_id)
        result = self.scanner.scan(paths.local_path)

        upload.scan_report_raw = clip_scan_report(result.raw_report)
        upload.virus_detected_at = utcnow() if result.infected else None
        upload.scanned_at = utcnow()
        # Committed together with the stage write, so a lost lease discards the result too.
        job_queue.set_stage(db, job, JobStage.recording, worker_id=worker_id)
        if result.infected:
            logger.warning("Virus detected in upload %s (file_id=%s)", upload.id, upload.file_id)
        logger.info("Saved scan results for upload %s (verdict=%s)", upload.id, result.verdict.value)

    def _relocate(self, upload: Upload) -> str:
        source_key = upload.object_key
        destination_key = build_scanned_key(upload.owner.sub, upload.file_id)
        if source_key == destination_key:
            logger.info("Upload %s already at %s", upload.id, destination_key)
            return destination_key

        logger.info("Moving object %s -> %s", source_key, destination_key)
        if storage.object_exists(destination_key):
            logger.info("Destination %s already exists; skipping copy", destination_key)
        else:
            storage.copy_object(source_key, destination_key)

        if not storage.object_exists(destination_key):
            raise RelocationError(f"Copy to {destination_key} is not visible; keeping {source_key}")

        storage.delete_object(source_key)
        return destination_key
