from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from gallery.models.image import Image, VariantStatus
from gallery.schemas.media import (
    ProcessingImageRead,
    ProcessingStatusResponse,
    QueueStatusRead,
    RotateRequest,
    RotationResultRead,
    VariantRetryResponse,
)
from gallery.services.media_errors import AlreadyInProgress, AssetNotFound, InvalidArgument, MediaPipelineError
from gallery.services.media_pipeline import MediaPipeline
from gallery.services.rotation import RotationResult


router = APIRouter(prefix="/images", tags=["images"])

_ERROR_STATUS: tuple[tuple[type[MediaPipelineError], int], ...] = (
    (InvalidArgument, status.HTTP_400_BAD_REQUEST),
    (AssetNotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyInProgress, status.HTTP_409_CONFLICT),
)


def media_error_status(exc: MediaPipelineError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _processing_read(image: Image) -> ProcessingImageRead:
    return ProcessingImageRead(
        id=image.id,
        filename=image.filename,
        key=image.key,
        variant_status=image.variant_status.value,
        created_at=image.created_at,
    )


def _rotation_read(result: RotationResult) -> RotationResultRead:
    return RotationResultRead(
        image_id=result.asset_id,
        degrees=result.degrees,
        outcomes={name: outcome.value for name, outcome in result.outcomes.items()},
        errors=result.errors,
        updated_at=result.updated_at,
    )


def get_media_pipeline(request: Request) -> MediaPipeline:
    pipeline = getattr(request.app.state, "media_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Media pipeline not ready")
    return pipeline


@router.post("/{image_id}/rotate", response_model=RotationResultRead)
async def rotate_image(
    image_id: UUID,
    payload: RotateRequest,
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> RotationResultRead:
    result = await pipeline.rotation.rotate(image_id, payload.degrees)
    return _rotation_read(result)


@router.post("/{image_id}/rotate/{representation}", response_model=RotationResultRead)
async def rotate_image_representation(
    image_id: UUID,
    representation: str,
    payload: RotateRequest,
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> RotationResultRead:
    result = await pipeline.rotation.rotate_representation(image_id, payload.degrees, representation)
    return _rotation_read(result)


@router.post("/{image_id}/variants", response_model=VariantRetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def regenerate_image_variants(
    image_id: UUID,
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> VariantRetryResponse:
    await pipeline.queue.rederive(image_id)
    return VariantRetryResponse(
        image_id=image_id,
        variant_status=VariantStatus.pending.value,
        queue=QueueStatusRead.model_validate(pipeline.queue.get_status()),
    )


@router.post("/{image_id}/variants/retry", response_model=VariantRetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_image_variants(
    image_id: UUID,
    pipeline: MediaPipeline = Depends(get_media_pipeline),
) -> VariantRetryResponse:
    await pipeline.queue.retry(image_id)
    return VariantRetryResponse(
        image_id=image_id,
        variant_status=VariantStatus.pending.value,
        queue=QueueStatusRead.model_validate(pipeline.queue.get_status()),
    )


@router.get("/processing-status", response_model=ProcessingStatusResponse)
async def processing_status(pipeline: MediaPipeline = Depends(get_media_pipeline)) -> ProcessingStatusResponse:
    images = await pipeline.status_store.list_unfinished(limit=200)
    reads = [_processing_read(image) for image in images]
    return ProcessingStatusResponse(
        images=reads,
        queue=QueueStatusRead.model_validate(pipeline.queue.get_status()),
        total=len(reads),
        pending=sum(1 for image in reads if image.variant_status == VariantStatus.pending.value),
        processing=sum(1 for image in reads if image.variant_status == VariantStatus.processing.value),
    )
