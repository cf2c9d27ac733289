"""Pydantic schemas for content and scheduled job operations"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ContentCreate(BaseModel):
    """Register an object that has already been uploaded to the blob store"""
    object_key: str = Field(..., min_length=1, max_length=512)
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str = "video/mp4"
    file_size_bytes: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    caption: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    cover_url: Optional[str] = None
    privacy_status: str = "public"
    platform_options: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class ContentResponse(BaseModel):
    id: int
    object_key: str
    filename: str
    title: Optional[str] = None


class JobCreate(BaseModel):
    content_id: int
    platforms: List[str] = Field(..., min_length=1)
    scheduled_for: datetime
    notes: Optional[str] = None


class JobResubmit(BaseModel):
    scheduled_for: Optional[datetime] = None
    platforms: Optional[List[str]] = None
