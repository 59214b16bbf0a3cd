from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class UploadUrlResponse(BaseModel):
    upload_url: str


class StoredObjectResponse(BaseModel):
    object_path: str
    size: int
    content_type: str


class PropertyImageRequest(BaseModel):
    property_image_url: str = Field(min_length=1)
    property_id: UUID | None = None


class PropertyImageResponse(BaseModel):
    object_path: str
