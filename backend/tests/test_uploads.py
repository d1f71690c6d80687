from __future__ import annotations

import pytest

from upload_scanner.core import config as app_config
from upload_scanner.models.job import Job, JobStatus, JobType
from upload_scanner.models.upload import Upload
from upload_scanner.models.user import User
from upload_scanner.services.uploads import (
    DuplicateUploadError,
    build_scanned_key,
    build_temp_key,
    register_completed_upload,
)


def test_register_creates_upload_and_pending_job(db_session, session_factory):
    registered = register_completed_upload(
        db_session, file_id="f1", subject="u1", original_filename="scan.zip"
    )

    upload, job = registered.upload, registered.job
    assert upload.object_key == "uploads/temp/u1/f1"
    assert upload.scanned_at is None
    assert upload.virus_detected_at is None
    assert job.type == JobType.virus_scan
    assert job.status == JobStatus.pending
    assert job.payload == {"upload_id": upload.id}

    # Committed: visible from a fresh session.
    other = session_factory()
    try:
        assert other.query(Upload).count() == 1
        assert other.query(Job).count() == 1
        assert other.query(User).one().sub == "u1"
    finally:
        other.close()


def test_register_reuses_existing_user(db_session):
    a = register_completed_upload(db_session, file_id="f1", subject="u1", original_filename="a.dcm")
    b = register_completed_upload(db_session, file_id="f2", subject="u1", original_filename="b.dcm")

    assert a.upload.owner_user_id == b.upload.owner_user_id
    assert db_session.query(User).count() == 1


def test_register_keeps_explicit_object_key(db_session):
    registered = register_completed_upload(
        db_session, file_id="f1", subject="u1", original_filename="a.dcm", object_key="incoming/x/f1"
    )

    assert registered.upload.object_key == "incoming/x/f1"


def test_duplicate_file_id_is_rejected_and_nothing_is_added(db_session):
    register_completed_upload(db_session, file_id="f1", subject="u1", original_filename="a.dcm")

    with pytest.raises(DuplicateUploadError):
        register_completed_upload(db_session, file_id="f1", subject="u2", original_filename="b.dcm")

    assert db_session.query(Upload).count() == 1
    assert db_session.query(Job).count() == 1


@pytest.mark.parametrize("file_id,subject", [("", "u1"), ("  ", "u1"), ("f1", ""), ("f1", None)])
def test_missing_identifiers_are_rejected(db_session, file_id, subject):
    with pytest.raises(ValueError):
        register_completed_upload(db_session, file_id=file_id, subject=subject, original_filename="a.dcm")

    assert db_session.query(Upload).count() == 0


def test_keys_use_configured_prefixes():
    app_config.settings.S3_TEMP_PREFIX = "tmp"
    app_config.settings.S3_SCANNED_PREFIX = "done"

    assert build_temp_key("alice", "f1") == "tmp/alice/f1"
    assert build_scanned_key("alice", "f1") == "done/alice/f1"


@pytest.mark.parametrize(
    "file_id,subject",
    [("../victim", "u1"), ("/etc/x", "u1"), ("a/b", "u1"), (".", "u1"), ("..", "u1"), ("f1", "../u2"), ("f1", "a/b")],
)
def test_ids_that_are_not_a_single_safe_segment_are_rejected(db_session, file_id, subject):
    with pytest.raises(ValueError, match="unsupported characters"):
        register_completed_upload(db_session, file_id=file_id, subject=subject, original_filename="a.dcm")

    assert db_session.query(Upload).count() == 0
    assert db_session.query(Job).count() == 0


@pytest.mark.parametrize("file_id", ["3f2b7a9d4c1e", "f_1-2", "upload.part1"])
def test_typical_transport_ids_are_accepted(db_session, file_id):
    registered = register_completed_upload(
        db_session, file_id=file_id, subject="auth0|5f7c8ec7c33c6c004bbafe82", original_filename="a.dcm"
    )

    assert registered.upload.file_id == file_id
