"""Video model for uploaded assets and their analysis state."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, JSON, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


VIDEO_STATUSES = ("uploaded", "processing", "safe", "flagged", "failed")


class Video(Base):
    """User-uploaded video with processing status and analysis results."""

    __tablename__ = "videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    filename = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    thumbnail_path = Column(String, nullable=True)
    status = Column(String, nullable=False, default="uploaded")  # uploaded, processing, safe, flagged, failed
    processing_progress = Column(Integer, nullable=False, default=0)
    flag_reason = Column(String, nullable=True)
    analysis_results = Column(JSON, nullable=True)
    views = Column(Integer, nullable=False, default=0)
    uploader_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    uploader = relationship("User", back_populates="videos")
