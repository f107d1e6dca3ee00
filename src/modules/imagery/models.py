"""
Image and TransformationJob Models

ImageRecord is the metadata store's view of one uploaded image: where the
original lives, its transformation history and the processing lock.
TransformationJob tracks one asynchronous request through its lifecycle.
"""

import uuid
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ImageRecord(SQLModel, table=True):
    """
    Uploaded image.

    Stores:
    - Storage key of the original and its probed metadata
    - Transformation history (one entry per completed transform)
    - Processing lock and last processing outcome
    """
    __tablename__ = "images"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    owner_id: str = Field(index=True)

    # Original file
    original_name: str
    filename: str
    mime_type: str
    size: int
    width: Optional[int] = None
    height: Optional[int] = None
    path: str  # storage key

    # History entries: {jobId?, transformations, output, completedAt|appliedAt}
    transformations: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    image_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))

    # Processing lock
    is_processing: bool = Field(default=False)
    processing_status: str = Field(default="completed")
    processing_error: Optional[str] = None
    last_transformed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def status_dict(self) -> Dict[str, Any]:
        return {
            "imageId": self.id,
            "isProcessing": self.is_processing,
            "status": self.processing_status,
            "error": self.processing_error,
            "lastTransformedAt": self.last_transformed_at.isoformat() if self.last_transformed_at else None,
        }

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "originalName": self.original_name,
            "filename": self.filename,
            "mimeType": self.mime_type,
            "size": self.size,
            "width": self.width,
            "height": self.height,
            "path": self.path,
            "metadata": self.image_metadata,
            "transformations": self.transformations,
            "isProcessing": self.is_processing,
            "processingStatus": self.processing_status,
            "processingError": self.processing_error,
            "lastTransformedAt": self.last_transformed_at.isoformat() if self.last_transformed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class TransformationJob(SQLModel, table=True):
    """One asynchronous transformation request."""
    __tablename__ = "transformation_jobs"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    image_id: str = Field(index=True)
    owner_id: str = Field(index=True)

    source_path: str
    original_filename: str
    spec: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Pipeline Status
    status: str = Field(default="pending")
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    attempts: int = Field(default=0)

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "jobId": self.id,
            "imageId": self.image_id,
            "status": self.status,
            "error": self.error,
            "result": self.result,
            "attempts": self.attempts,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
