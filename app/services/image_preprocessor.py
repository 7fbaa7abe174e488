"""
Upload validation and image normalisation.

Uploads are checked for type and size, decoded with Pillow, and, when
larger than the configured box or byte target, resized to fit inside the
box (never enlarged) and re-encoded in their own format. Images already
within limits are stored byte-for-byte.

This module is synchronous; callers run `preprocess_image` through
`asyncio.to_thread` because decoding and resampling can take a while.
"""

from __future__ import annotations

import io
import logging
from pathlib import PurePath
from typing import NamedTuple

from PIL import Image, ImageOps, UnidentifiedImageError

from app.core.config import Settings
from app.core.errors import (
    ImageDecodeError,
    ImageTooLargeError,
    MissingImageError,
    UnsupportedImageTypeError,
)

logger = logging.getLogger(__name__)

# extension → (Pillow format, MIME type)
_FORMATS: dict[str, tuple[str, str]] = {
    ".jpg": ("JPEG", "image/jpeg"),
    ".jpeg": ("JPEG", "image/jpeg"),
    ".png": ("PNG", "image/png"),
    ".webp": ("WEBP", "image/webp"),
}
_ALLOWED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

# Lowest quality the size-cap loop will step down to for lossy formats.
_MIN_QUALITY = 40
_QUALITY_STEP = 15


class ProcessedImage(NamedTuple):
    data: bytes
    content_type: str
    extension: str
    original_size: int
    processed_size: int
    original_dimensions: str       # "WxH"
    processed_dimensions: str
    was_resized: bool


def validate_upload(
    data: bytes, filename: str, content_type: str | None, settings: Settings
) -> str:
    """
    Reject anything that is not a non-empty JPEG/PNG/WEBP within the upload limit.
    Returns the normalised lower-case extension.
    """
    if not data:
        raise MissingImageError()

    extension = PurePath(filename or "").suffix.lower()
    mime = (content_type or "").lower()
    if extension not in _FORMATS or mime not in _ALLOWED_MIME_TYPES:
        raise UnsupportedImageTypeError(f"{filename} ({content_type})")

    if len(data) > settings.max_upload_bytes:
        raise ImageTooLargeError(len(data), settings.max_upload_bytes)

    return extension


def preprocess_image(
    data: bytes, filename: str, content_type: str | None, settings: Settings
) -> ProcessedImage:
    extension = validate_upload(data, filename, content_type, settings)
    pil_format, mime = _FORMATS[extension]

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeError(f"Could not decode image bytes: {exc}")

    # The stored key and the MIME type sent upstream come from the extension,
    # so the decoded content has to agree with it.
    if _canonical_format(image.format) != pil_format:
        raise UnsupportedImageTypeError(f"{filename} (content is {image.format or 'unknown'})")

    original_dimensions = _dimensions(image)
    needs_resize = (
        len(data) > settings.image_target_bytes
        or image.width > settings.image_max_width
        or image.height > settings.image_max_height
    )

    if not needs_resize:
        return ProcessedImage(
            data=data,
            content_type=mime,
            extension=extension,
            original_size=len(data),
            processed_size=len(data),
            original_dimensions=original_dimensions,
            processed_dimensions=original_dimensions,
            was_resized=False,
        )

    # Bake in EXIF orientation before the metadata is dropped by re-encoding.
    image = ImageOps.exif_transpose(image)
    image.thumbnail(
        (settings.image_max_width, settings.image_max_height),
        Image.Resampling.LANCZOS,
    )
    if pil_format == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    encoded = _encode_within_budget(image, pil_format, settings)

    logger.info(
        "Image normalised | %s %s → %s | %d → %d bytes",
        filename, original_dimensions, _dimensions(image), len(data), len(encoded),
    )

    return ProcessedImage(
        data=encoded,
        content_type=mime,
        extension=extension,
        original_size=len(data),
        processed_size=len(encoded),
        original_dimensions=original_dimensions,
        processed_dimensions=_dimensions(image),
        was_resized=True,
    )


def _encode_within_budget(image: Image.Image, pil_format: str, settings: Settings) -> bytes:
    if pil_format == "PNG":
        return _encode(image, pil_format, optimize=True)

    quality = settings.image_quality
    encoded = _encode(image, pil_format, quality=quality)
    while len(encoded) > settings.image_target_bytes and quality > _MIN_QUALITY:
        quality = max(quality - _QUALITY_STEP, _MIN_QUALITY)
        encoded = _encode(image, pil_format, quality=quality)
    return encoded


def _encode(image: Image.Image, pil_format: str, **options: object) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=pil_format, **options)
    return buffer.getvalue()


def _canonical_format(pil_format: str | None) -> str | None:
    # Multi-picture JPEGs from phone cameras decode as MPO.
    return "JPEG" if pil_format == "MPO" else pil_format


def _dimensions(image: Image.Image) -> str:
    return f"{image.width}x{image.height}"
