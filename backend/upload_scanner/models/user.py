# upload_scanner/models/user.py
from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from upload_scanner.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Subject identifier from the identity provider ("sub" claim).
    sub = Column(String(128), unique=True, index=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    uploads = relationship("Upload", back_populates="owner")
