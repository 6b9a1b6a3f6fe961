"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
These schemas are used for data validation in your application.

Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- Video -> "video" collection
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

VIDEO_ACTIVE = 1
VIDEO_DELETED = 0


class Video(BaseModel):
    """
    Videos collection schema
    Collection name: "video" (lowercase of class name)
    """
    video_id: str = Field(..., description="Public video identifier")
    user_id: Optional[int] = Field(None, description="Uploading user")
    title: str = Field(..., description="Video title")
    description: Optional[str] = Field(None, description="Video description")
    file_name: str = Field(..., description="Storage key of the file on disk")
    original_name: str = Field(..., description="Filename sent by the client")
    url: str = Field(..., description="Public URL of the stored file")
    mime_type: str = Field(..., description="Declared MIME type of the upload")
    size: int = Field(..., ge=0, description="Size in bytes")
    views: int = Field(0, ge=0, description="View count")
    tags: List[str] = Field(default_factory=list, description="Tags for search")
    upload_time: datetime = Field(..., description="When the file finished uploading")
    status: int = Field(VIDEO_ACTIVE, description="1 active, 0 deleted")
    delete_time: Optional[datetime] = Field(None, description="Set on soft delete")


class UploadedImage(BaseModel):
    file_name: str
    original_name: str
    url: str
    mime_type: str
    size: int = Field(..., ge=0)
