from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from upload_scanner.core.base import Base


class Upload(Base):
    __tablename__ = "uploads"

    id = Column(Integer, primary_key=True, index=True)

    # Opaque id assigned by the upload transport; also names the worker-local scratch files.
    file_id = Column(String(128), nullable=False, unique=True, index=True)

    owner_user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    original_filename = Column(String(255), nullable=False)

    # Current location: under S3_TEMP_PREFIX until relocated, then under S3_SCANNED_PREFIX.
    object_key = Column(String(1024), nullable=False)

    uploaded_at = Column(DateTime(timezone=True), nullable=False)

    # Scan outcome. virus_detected_at is set iff the engine reported an infection.
    virus_detected_at = Column(DateTime(timezone=True), nullable=True)
    scan_report_raw = Column(Text, nullable=True)
    # Set once the scan outcome is committed; a re-delivered job resumes at relocation.
    scanned_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("User", back_populates="uploads")

    @property
    def is_infected(self) -> bool:
        return self.virus_detected_at is not None

    def __repr__(self) -> str:
        return f"<Upload id={self.id} file_id={self.file_id} object_key={self.object_key}>"
