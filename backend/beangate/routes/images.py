"""
BeanGate Backend: Image Upload Route
======================================

What:  POST /api/images accepts a coffee bag photo and returns the reference
       POST /api/analyze expects.
How:   Reads the multipart upload into memory (bounded by MAX_FILE_SIZE) and
       hands it to the image store, which checks extension and size.
"""

import logging

from fastapi import APIRouter, Depends, File, UploadFile

from beangate.dependencies import get_image_store
from beangate.schemas.analysis import ErrorResponse, ImageUploadResponse
from beangate.services.image_store import FileImageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Images"])


@router.post(
    "/images",
    status_code=201,
    response_model=ImageUploadResponse,
    responses={
        400: {"description": "Unsupported file type or size", "model": ErrorResponse},
        500: {"description": "Storage failure", "model": ErrorResponse},
    },
    summary="Upload a coffee bag photo",
    description="PNG, JPEG, WebP or GIF. Returns an image_ref for POST /api/analyze.",
)
async def upload_image(
    file: UploadFile = File(..., description="Coffee bag photo"),
    images: FileImageStore = Depends(get_image_store),
) -> ImageUploadResponse:
    try:
        content = await file.read()
        logger.info(
            "Received image upload: filename=%s, size=%d bytes",
            file.filename or "unknown",
            len(content),
        )
        image_ref = await images.store(
            filename=file.filename or "",
            content=content,
            content_length=file.size,
        )
    finally:
        await file.close()
    return ImageUploadResponse(image_ref=image_ref, size=len(content))
