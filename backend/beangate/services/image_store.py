"""
BeanGate Backend: Image Store
===============================

What:  Stores uploaded coffee bag photos and hands them back by reference.
How:   ImageStore is the contract the orchestrator depends on: `load(ref)`
       returns bytes plus a MIME type. FileImageStore keeps images on local
       disk in date-organized directories with UUID filenames; the reference
       is the path relative to the storage root.
Who:   Built in the app lifespan; used by POST /api/images (store) and by the
       AnalysisOrchestrator (load).

Upload checks are limited to extension and size. Image decoding and content
sniffing are out of scope; the vision backend rejects what it cannot read.

Directory Structure:
    storage/
    └── 2026/
        └── 10/
            └── 19/
                ├── a1b2c3d4-5678.jpg
                └── e5f6g7h8-9012.png
"""

import base64
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import aiofiles

from beangate.exceptions import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

# Formats every supported vision backend accepts.
MIME_TYPES_BY_EXTENSION = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


@dataclass(frozen=True)
class StoredImage:
    data: bytes
    mime_type: str

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


class ImageStore(ABC):
    """Supplies image bytes and MIME type by reference."""

    @abstractmethod
    async def load(self, image_ref: str) -> StoredImage:
        """Raises NotFoundError when nothing is stored under `image_ref`."""
        ...


class FileImageStore(ImageStore):
    """
    Local-disk image store.

    Lifecycle of an uploaded image:
        1. POST /api/images → store(): extension and size checks
        2. Bytes written to YYYY/MM/DD/<uuid>.<ext> under storage_root
        3. Relative path returned to the caller as the image reference
        4. POST /api/analyze → load(ref) reads the bytes back
    """

    def __init__(self, storage_root: str, max_file_size: int):
        self.storage_root = Path(storage_root).resolve()
        self.max_file_size = max_file_size
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("FileImageStore initialized with storage_root=%s", self.storage_root)

    def validate_extension(self, filename: str) -> str:
        """Returns the normalized (lowercase, dotted) extension or raises ValidationError."""
        ext = Path(filename or "").suffix.lower()
        if ext not in MIME_TYPES_BY_EXTENSION:
            raise ValidationError(
                message=(
                    f"File type '{ext}' is not supported. "
                    f"Allowed types: {', '.join(sorted(MIME_TYPES_BY_EXTENSION))}"
                ),
                field="file",
                context={"extension": ext, "allowed": sorted(MIME_TYPES_BY_EXTENSION)},
            )
        return ext

    def validate_size(self, content_length: Optional[int], actual_size: int) -> None:
        """
        Checks the declared Content-Length first, then the bytes received.
        Raises ValidationError for empty or oversized uploads.
        """
        max_mb = self.max_file_size / (1024 * 1024)

        if content_length and content_length > self.max_file_size:
            raise ValidationError(
                message=f"File size exceeds maximum of {max_mb:.0f}MB. Please upload a smaller image.",
                field="file",
                context={"max_size_mb": max_mb, "reported_size": content_length},
            )
        if actual_size == 0:
            raise ValidationError(message="The uploaded file is empty.", field="file")
        if actual_size > self.max_file_size:
            raise ValidationError(
                message=f"File size ({actual_size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        now = datetime.now(timezone.utc)
        relative_path = f"{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    def _resolve_ref(self, image_ref: str) -> Path:
        # References are relative paths we generated; anything escaping the
        # storage root is treated as unknown.
        try:
            candidate = (self.storage_root / image_ref).resolve()
        except (ValueError, OSError):
            # Embedded NUL bytes and similar unrepresentable paths.
            raise NotFoundError(resource="image") from None
        if not candidate.is_relative_to(self.storage_root) or candidate == self.storage_root:
            raise NotFoundError(resource="image", resource_id=image_ref)
        return candidate

    async def store(
        self,
        filename: str,
        content: bytes,
        content_length: Optional[int] = None,
    ) -> str:
        """
        Validates and writes an upload; returns its image reference.
        Raises ValidationError (type/size) or StorageError (disk failure).
        """
        ext = self.validate_extension(filename)
        self.validate_size(content_length, len(content))

        absolute_path, relative_path = self._generate_storage_path(ext)
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store image at %s: %s", relative_path, e)
            raise StorageError(
                message="Failed to save uploaded image. Please try again.",
                context={"image_ref": relative_path, "os_error": type(e).__name__},
            ) from e

        logger.info("Image stored: %s (%d bytes)", relative_path, len(content))
        return relative_path

    async def load(self, image_ref: str) -> StoredImage:
        path = self._resolve_ref(image_ref)
        mime_type = MIME_TYPES_BY_EXTENSION.get(path.suffix.lower())
        if mime_type is None or not path.is_file():
            raise NotFoundError(resource="image", resource_id=image_ref)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            raise NotFoundError(resource="image", resource_id=image_ref) from None
        except OSError as e:
            logger.error("Failed to read image %s: %s", image_ref, e)
            raise StorageError(
                message="Failed to read the stored image. Please try again.",
                context={"image_ref": image_ref, "os_error": type(e).__name__},
            ) from e
        return StoredImage(data=data, mime_type=mime_type)
