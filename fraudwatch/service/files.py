from __future__ import annotations

import io
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence

from PIL import Image, ImageOps, UnidentifiedImageError

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import ValidationError

logger = get_logger(__name__)

IMAGE_DIR = "images"
MAX_DIMENSION = 1200
JPEG_QUALITY = 85


class PathTraversalError(ValueError):
    """Raised when a path escapes the upload root."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal."""
    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")
    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate
    raise PathTraversalError("path traversal detected")


@dataclass
class UploadedImage:
    filename: str
    content_type: str
    data: bytes


@dataclass
class StoredImage:
    original_name: str
    filename: str
    path: str
    size: int


class FileService:
    """Validates, normalises and stores report evidence images.

    Every upload is re-encoded as a JPEG no larger than 1200x1200, which
    also strips metadata and anything that is not pixel data.
    """

    def __init__(
        self,
        upload_root: str,
        *,
        max_bytes: int = 5 * 1024 * 1024,
        max_files: int = 5,
        max_pixels: int = 40_000_000,
        allowed_types: Sequence[str] = ("image/jpeg", "image/png", "image/webp"),
    ) -> None:
        self.upload_root = Path(upload_root)
        self.image_dir = self.upload_root / IMAGE_DIR
        self.image_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.max_files = max_files
        self.max_pixels = max_pixels
        self.allowed_types = tuple(allowed_types)

    def validate(self, upload: UploadedImage) -> None:
        if not upload.data:
            raise ValidationError("No file provided", detail={"file": upload.filename})
        if len(upload.data) > self.max_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {self.max_bytes // (1024 * 1024)}MB",
                detail={"file": upload.filename},
            )
        if upload.content_type not in self.allowed_types:
            raise ValidationError(
                f"Invalid file type. Allowed types: {', '.join(self.allowed_types)}",
                detail={"file": upload.filename},
            )

    def _process(self, upload: UploadedImage) -> StoredImage:
        try:
            with Image.open(io.BytesIO(upload.data)) as img:
                # open() only reads the header; refuse before any pixels are decoded
                width, height = img.size
                if width * height > self.max_pixels:
                    raise Image.DecompressionBombError(
                        f"{width}x{height} exceeds {self.max_pixels} pixels"
                    )
                img = ImageOps.exif_transpose(img)
                img.thumbnail((MAX_DIMENSION, MAX_DIMENSION))
                if img.mode != "RGB":
                    img = img.convert("RGB")
                buffer = io.BytesIO()
                img.save(buffer, format="JPEG", quality=JPEG_QUALITY)
        except Image.DecompressionBombError as exc:
            logger.warning("image_too_large", file=upload.filename, error=str(exc))
            raise ValidationError(
                "Image dimensions are too large", detail={"file": upload.filename}
            )
        except (UnidentifiedImageError, OSError) as exc:
            logger.warning("image_decode_failed", file=upload.filename, error=str(exc))
            raise ValidationError(
                "File is not a valid image", detail={"file": upload.filename}
            )
        filename = f"{uuid.uuid4()}.jpg"
        relative = f"{IMAGE_DIR}/{filename}"
        target = safe_join(self.upload_root, relative)
        payload = buffer.getvalue()
        target.write_bytes(payload)
        return StoredImage(
            original_name=upload.filename,
            filename=filename,
            path=relative,
            size=len(payload),
        )

    def save_images(self, uploads: Sequence[UploadedImage]) -> List[StoredImage]:
        """Validate the whole batch, then write each image.

        If any image fails after others were written, the written ones are
        removed before the error propagates.
        """
        if not uploads:
            return []
        if len(uploads) > self.max_files:
            raise ValidationError(
                f"Too many files. Maximum {self.max_files} files allowed"
            )
        for upload in uploads:
            self.validate(upload)
        stored: List[StoredImage] = []
        try:
            for upload in uploads:
                stored.append(self._process(upload))
        except Exception:
            self.delete_files(image.path for image in stored)
            raise
        logger.info("images_stored", count=len(stored))
        return stored

    def delete_file(self, path: str) -> bool:
        try:
            target = safe_join(self.upload_root, path)
        except PathTraversalError:
            logger.warning("image_delete_rejected", path=path)
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("image_delete_failed", path=path, error=str(exc))
            return False
        return True

    def delete_files(self, paths: Iterable[str]) -> int:
        return sum(1 for path in paths if self.delete_file(path))

    @staticmethod
    def file_url(filename: str) -> str:
        return f"/uploads/{IMAGE_DIR}/{filename}"
