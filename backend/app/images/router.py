"""FastAPI router for image conversion endpoints.

Endpoints:
    POST /convert-to-webp:      upload -> WebP                 {"webpImage": ...}
    POST /optimize-image:       upload -> optimized JPEG       {"optimizedImage": ...}
    POST /optimize-and-convert: upload -> JPEG -> WebP         {"optimizedWebpImage": ...}

All three take a multipart file field ``image`` and an optional ``quality``
form field. Failures are raised as app.errors kinds and turned into
``{"error": ...}`` responses by the handlers registered in main.py.
"""
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile

from .schemas import (
    ErrorResponse,
    OptimizedImageResponse,
    OptimizedWebpImageResponse,
    TransformKind,
    TransformRequest,
    UPLOAD_FIELD,
    WebpImageResponse,
    parse_quality,
)
from .service import ImageTransformService
from .storage import TempFileScope, UploadStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["images"])

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or oversized upload"},
    500: {"model": ErrorResponse, "description": "Conversion failed"},
}


def get_upload_store() -> UploadStore:
    return UploadStore.get_instance()


def get_transform_service() -> ImageTransformService:
    return ImageTransformService.get_instance()


async def _run_pipeline(
    kind: TransformKind,
    image: Optional[UploadFile],
    quality: Optional[str],
    background_tasks: BackgroundTasks,
    store: UploadStore,
    service: ImageTransformService,
) -> str:
    """Receive, transform and encode one upload inside a cleanup scope.

    On success the scope's files are deleted by a background task after the
    response is sent; on failure they are deleted before the error
    propagates.
    """
    request = TransformRequest.for_kind(kind, parse_quality(quality))
    with TempFileScope(background_tasks) as scope:
        upload = await store.receive(image, scope)
        return await service.process(upload, request, scope)


@router.post(
    "/convert-to-webp",
    response_model=WebpImageResponse,
    responses=_ERROR_RESPONSES,
)
async def convert_to_webp(
    background_tasks: BackgroundTasks,
    image: Optional[UploadFile] = File(None, alias=UPLOAD_FIELD),
    quality: Optional[str] = Form(None),
    store: UploadStore = Depends(get_upload_store),
    service: ImageTransformService = Depends(get_transform_service),
) -> WebpImageResponse:
    """Convert an uploaded image to WebP.

    Args:
        image: The image to convert
        quality: Encoder quality (default 80)

    Returns:
        WebpImageResponse with the base64-encoded WebP
    """
    encoded = await _run_pipeline(
        TransformKind.WEBP, image, quality, background_tasks, store, service
    )
    return WebpImageResponse(webpImage=encoded)


@router.post(
    "/optimize-image",
    response_model=OptimizedImageResponse,
    responses=_ERROR_RESPONSES,
)
async def optimize_image(
    background_tasks: BackgroundTasks,
    image: Optional[UploadFile] = File(None, alias=UPLOAD_FIELD),
    quality: Optional[str] = Form(None),
    store: UploadStore = Depends(get_upload_store),
    service: ImageTransformService = Depends(get_transform_service),
) -> OptimizedImageResponse:
    """Recompress an uploaded image as an optimized JPEG."""
    encoded = await _run_pipeline(
        TransformKind.OPTIMIZE, image, quality, background_tasks, store, service
    )
    return OptimizedImageResponse(optimizedImage=encoded)


@router.post(
    "/optimize-and-convert",
    response_model=OptimizedWebpImageResponse,
    responses=_ERROR_RESPONSES,
)
async def optimize_and_convert(
    background_tasks: BackgroundTasks,
    image: Optional[UploadFile] = File(None, alias=UPLOAD_FIELD),
    quality: Optional[str] = Form(None),
    store: UploadStore = Depends(get_upload_store),
    service: ImageTransformService = Depends(get_transform_service),
) -> OptimizedWebpImageResponse:
    """Optimize an uploaded image as JPEG, then convert the result to WebP.

    The WebP step always uses the maximum compression effort. The
    intermediate JPEG is deleted once the WebP has been written.
    """
    encoded = await _run_pipeline(
        TransformKind.OPTIMIZE_AND_CONVERT, image, quality, background_tasks, store, service
    )
    return OptimizedWebpImageResponse(optimizedWebpImage=encoded)
