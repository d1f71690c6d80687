from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, DateTime, Enum as SAEnum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator

from upload_scanner.core.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobType(str, PyEnum):
    virus_scan = "virus-scan"


class JobStatus(str, PyEnum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobStage(str, PyEnum):
    downloading = "downloading"
    validating = "validating"
    scanning = "scanning"
    recording = "recording"
    relocating = "relocating"
    done = "done"


class JSONBCompat(TypeDecorator):
    impl = JSONB
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(astext_type=Text()))
        return dialect.type_descriptor(JSON())


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _str_enum(enum_cls, length: int) -> SAEnum:
    # Stored as plain VARCHAR holding the enum *value* ("virus-scan", not "virus_scan").
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=_enum_values,
        validate_strings=True,
    )


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_type_status_id", "type", "status", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)

    type = Column(_str_enum(JobType, 100), nullable=False)
    payload = Column(JSONBCompat(), nullable=False)

    status = Column(_str_enum(JobStatus, 50), nullable=False, default=JobStatus.pending)
    stage = Column(_str_enum(JobStage, 50), nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)

    # Lease: who holds the job and until when.
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Job id={self.id} type={self.type} status={self.status} "
            f"attempts={self.attempts}/{self.max_attempts} locked_by={self.locked_by}>"
        )
