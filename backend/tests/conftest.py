import io
import os
import zipfile

# Point the app at SQLite before anything imports upload_scanner.core.database.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from upload_scanner.core.base import Base
from upload_scanner.core import config as app_config
from upload_scanner.core.database import get_db

# Import models so they register with SQLAlchemy metadata.
from upload_scanner.models.job import Job  # noqa: F401
from upload_scanner.models.upload import Upload  # noqa: F401
from upload_scanner.models.user import User  # noqa: F401

from upload_scanner.services.scan_engine import ScanResult, ScanVerdict


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def session_factory(db_engine):
    # The DB persists across tests (StaticPool); reset schema per test to avoid coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """
    In-memory stand-in for the boto3 S3 client (single bucket namespace is enough here).
    """

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.buckets: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        exc = self.fail_on.get(operation)
        if exc is not None:
            raise exc

    def get_object(self, Bucket, Key):  # noqa: N803
        self.calls.append(("get_object", Key))
        self._maybe_fail("get_object")
        if Key not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]), "ContentLength": len(self.objects[Key])}

    def head_object(self, Bucket, Key):  # noqa: N803
        self.calls.append(("head_object", Key))
        self._maybe_fail("head_object")
        if Key not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def copy_object(self, Bucket, Key, CopySource):  # noqa: N803
        self.calls.append(("copy_object", Key))
        self._maybe_fail("copy_object")
        source = CopySource["Key"]
        if source not in self.objects:
            raise _client_error("NoSuchKey", "CopyObject")
        self.objects[Key] = self.objects[source]
        return {"CopyObjectResult": {}}

    def delete_object(self, Bucket, Key):  # noqa: N803
        self.calls.append(("delete_object", Key))
        self._maybe_fail("delete_object")
        self.objects.pop(Key, None)
        return {}

    def head_bucket(self, Bucket):  # noqa: N803
        self.calls.append(("head_bucket", Bucket))
        self._maybe_fail("head_bucket")
        if Bucket not in self.buckets:
            raise _client_error("404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket):  # noqa: N803
        self.calls.append(("create_bucket", Bucket))
        self._maybe_fail("create_bucket")
        self.buckets.add(Bucket)
        return {}


@pytest.fixture(autouse=True)
def fake_s3(monkeypatch):
    """
    Stub the S3 client used by upload_scanner.services.s3 so tests never require AWS creds/network.
    """
    from upload_scanner.services import s3 as s3_service

    client = FakeS3Client()
    monkeypatch.setattr(s3_service, "_client", lambda: client)
    return client


class FakeScanner:
    def __init__(
        self,
        verdict: ScanVerdict = ScanVerdict.clean,
        raw_report: str | None = None,
        error: Exception | None = None,
        on_scan=None,
    ):
        self.verdict = verdict
        self.raw_report = raw_report
        self.error = error
        # Called with the local path while the "engine" is busy.
        self.on_scan = on_scan
        self.scanned: list[str] = []
        self.seen_existing: list[bool] = []

    def scan(self, local_path):
        self.scanned.append(str(local_path))
        self.seen_existing.append(os.path.exists(local_path))
        if self.on_scan is not None:
            self.on_scan(local_path)
        if self.error is not None:
            raise self.error
        report = self.raw_report
        if report is None:
            suffix = "Eicar-Test-Signature FOUND" if self.verdict == ScanVerdict.infected else "OK"
            report = f"/scan/{os.path.basename(str(local_path))}: {suffix}"
        return ScanResult(verdict=self.verdict, raw_report=report)


@pytest.fixture()
def scanner():
    return FakeScanner()


@pytest.fixture()
def scan_dir(tmp_path):
    path = tmp_path / "scan"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests tweak global settings (app_config.settings.*). Because that object is process-global,
    restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "JOB_MAX_ATTEMPTS",
        "JOB_LEASE_SECONDS",
        "JOB_RETRY_TRANSIENT_ERRORS",
        "ARCHIVE_MAX_ENTRIES",
        "ARCHIVE_MAX_TOTAL_BYTES",
        "CONTAINER_EXTENSIONS",
        "SCAN_REPORT_MAX_LENGTH",
        "UPLOAD_CALLBACK_SHARED_SECRET",
        "S3_TEMP_PREFIX",
        "S3_SCANNED_PREFIX",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session):
    from upload_scanner.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


def _build_zip(entries: dict[str, bytes | None]) -> bytes:
    """
    Build an in-memory zip. A ``None`` value writes a directory entry.
    """
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            if data is None:
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, data)
    return buf.getvalue()


def _dicom_bytes(*, with_magic: bool = True, body: bytes = b"\x08\x00\x05\x00") -> bytes:
    preamble = b"\x00" * 128
    return preamble + (b"DICM" if with_magic else b"\x02\x00\x10\x00") + body


@pytest.fixture()
def make_upload(db_session, fake_s3):
    """
    Create a user + upload + pending job, with the object already sitting at its temp key.

    Usage:
        upload, job = make_upload("f1", b"...", subject="u1", filename="scan.dcm")
    """
    from upload_scanner.services.uploads import register_completed_upload

    def _make(file_id: str, content: bytes, *, subject: str = "u1", filename: str = "file.bin"):
        registered = register_completed_upload(
            db_session,
            file_id=file_id,
            subject=subject,
            original_filename=filename,
        )
        fake_s3.objects[registered.upload.object_key] = content
        return registered.upload, registered.job

    return _make


@pytest.fixture()
def build_zip():
    return _build_zip


@pytest.fixture()
def dicom_bytes():
    return _dicom_bytes


@pytest.fixture()
def make_scanner():
    return FakeScanner


@pytest.fixture()
def take_over_job(session_factory):
    """
    Let the lease on a job run out and have another worker reclaim it, from a separate session.
    """
    from datetime import timedelta

    from sqlalchemy import update

    from upload_scanner.models.job import utcnow
    from upload_scanner.services import job_queue

    def _take_over(job_id: int, new_owner: str = "rival-worker"):
        other = session_factory()
        try:
            other.execute(
                update(Job).where(Job.id == job_id).values(lease_expires_at=utcnow() - timedelta(seconds=1))
            )
            other.commit()
            reclaimed = job_queue.try_dequeue(other, new_owner)
            assert reclaimed is not None and reclaimed.id == job_id
        finally:
            other.close()

    return _take_over
