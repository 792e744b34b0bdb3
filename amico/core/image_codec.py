"""Image encoding helpers for style and Tripo requests."""

from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from PIL import Image, UnidentifiedImageError

THUMBNAIL_SIZE_PX = 240
THUMBNAIL_QUALITY = 82


@dataclass
class ImagePayload:
    """Container for image bytes and metadata."""

    data: bytes
    filename: str
    mime_type: str

    @property
    def file_type(self) -> str:
        """Short type name used in Tripo file descriptors."""
        return self.mime_type.split("/", 1)[-1].replace("jpeg", "jpg")


def _detect_mime_type(path: Path, header: bytes) -> str:
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if header.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if header.startswith(b"RIFF") and header[8:12] == b"WEBP":
        return "image/webp"
    suffix = path.suffix.lower()
    if suffix in {".png", ".jpg", ".jpeg"}:
        return "image/png" if suffix == ".png" else "image/jpeg"
    if suffix == ".webp":
        return "image/webp"
    raise ValueError("Unsupported image format. Use PNG, JPEG or WebP.")


def encode_image(path: str) -> ImagePayload:
    """Load an image file for upload."""
    file_path = Path(path)
    data = file_path.read_bytes()
    mime_type = _detect_mime_type(file_path, data[:12])
    return ImagePayload(data=data, filename=file_path.name, mime_type=mime_type)


def to_data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"


def parse_data_url(data_url: str) -> ImagePayload:
    """Decode ``data:<mime>;base64,<payload>`` into bytes."""
    if not data_url.startswith("data:") or "," not in data_url:
        raise ValueError("Not a data URL")
    header, encoded = data_url[5:].split(",", 1)
    parts = header.split(";")
    if "base64" not in parts[1:]:
        raise ValueError("Only base64 data URLs are supported")
    mime_type = parts[0] or "application/octet-stream"
    try:
        data = base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc
    extension = mime_type.split("/", 1)[-1]
    return ImagePayload(data=data, filename=f"image.{extension}", mime_type=mime_type)


def make_thumbnail(
    data_url: str,
    max_size_px: int = THUMBNAIL_SIZE_PX,
    quality: int = THUMBNAIL_QUALITY,
) -> str:
    """Downscale an image data URL into a small JPEG data URL.

    The source is returned unchanged when it cannot be decoded.
    """
    try:
        payload = parse_data_url(data_url)
        with Image.open(io.BytesIO(payload.data)) as image:
            image = image.convert("RGB")
            image.thumbnail((max_size_px, max_size_px))
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=quality)
    except (ValueError, OSError, UnidentifiedImageError) as exc:
        logger.warning(f"Thumbnail compression failed, keeping original image: {exc}")
        return data_url
    return to_data_url(buffer.getvalue(), "image/jpeg")
