from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


VariantStatusLiteral = Literal["pending", "processing", "completed", "failed"]
RepresentationOutcomeLiteral = Literal["success", "skipped", "failed"]


class RotateRequest(BaseModel):
    degrees: Any


class RotationResultRead(BaseModel):
    success: bool = True
    image_id: UUID
    degrees: int
    outcomes: dict[str, RepresentationOutcomeLiteral] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    updated_at: datetime | None = None


class QueueStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    queue_length: int
    running_count: int
    max_concurrent: int


class ProcessingImageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str | None = None
    key: str
    variant_status: VariantStatusLiteral
    created_at: datetime


class ProcessingStatusResponse(BaseModel):
    images: list[ProcessingImageRead] = Field(default_factory=list)
    queue: QueueStatusRead
    total: int = 0
    pending: int = 0
    processing: int = 0


class VariantRetryResponse(BaseModel):
    image_id: UUID
    variant_status: VariantStatusLiteral
    queue: QueueStatusRead
