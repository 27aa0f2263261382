"""Receipt image intake checks.

Uploads are validated before any bytes are written to storage. Pillow is
used to sniff the real format of the payload; the declared content type
and the filename extension are only consulted when Pillow cannot decode
the bytes (e.g. a truncated JPEG the vision service may still read).
Uploads sent as base64 data URLs are decoded first by ``decode_data_url``.
"""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO
from pathlib import PurePath
from typing import Iterable, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from receiptflow.core.config import settings
from receiptflow.core.errors import PayloadTooLarge, UnsupportedMedia

logger = logging.getLogger(__name__)

# Pillow format name -> MIME type
_PIL_FORMATS = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",  # multi-picture JPEGs straight off phone cameras
    "PNG": "image/png",
    "WEBP": "image/webp",
}

_EXTENSIONS = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def normalise_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    value = content_type.split(";", 1)[0].strip().lower()
    if value == "image/jpg":
        return "image/jpeg"
    return value or None


def sniff_image_type(data: bytes) -> Optional[str]:
    """Return the MIME type Pillow detects, or ``None`` if undecodable."""
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return _PIL_FORMATS.get(fmt, f"image/{fmt.lower()}" if fmt else None)


def validate_receipt_image(
    data: bytes,
    filename: Optional[str] = None,
    declared_type: Optional[str] = None,
    *,
    max_size: Optional[int] = None,
    allowed_types: Optional[Iterable[str]] = None,
) -> str:
    """Validate an upload and return its canonical content type.

    :raises PayloadTooLarge: payload exceeds ``max_size`` bytes
    :raises UnsupportedMedia: empty payload or a type outside the allowed set
    """
    limit = max_size if max_size is not None else settings.MAX_UPLOAD_SIZE
    allowed = set(allowed_types or settings.ALLOWED_CONTENT_TYPES)

    size = len(data or b"")
    if size > limit:
        raise PayloadTooLarge(
            f"Image exceeds the {limit // (1024 * 1024)}MB limit",
            size=size,
            limit=limit,
        )
    if size == 0:
        raise UnsupportedMedia("Empty upload payload")

    content_type = sniff_image_type(data)
    if content_type is None:
        content_type = normalise_content_type(declared_type)
        if content_type is None and filename:
            content_type = _EXTENSIONS.get(PurePath(filename).suffix.lower())
        logger.debug("Pillow could not decode upload %s; using %s", filename, content_type)

    if content_type not in allowed:
        raise UnsupportedMedia(
            f"Unsupported image type: {content_type or 'unknown'}",
            allowed=sorted(allowed),
        )
    return content_type


def decode_data_url(data_url: str, *, max_size: Optional[int] = None) -> Tuple[bytes, Optional[str]]:
    """Decode a ``data:image/<type>;base64,<payload>`` URL.

    Returns the raw bytes and the declared content type; the bytes still go
    through :func:`validate_receipt_image`.

    :raises UnsupportedMedia: not a base64 image data URL, or bad base64
    :raises PayloadTooLarge: the payload is clearly over ``max_size`` bytes
    """
    header, sep, payload = (data_url or "").strip().partition(",")
    header = header.lower()
    if not sep or not header.startswith("data:image/") or not header.endswith(";base64"):
        raise UnsupportedMedia("Invalid base64 image format")

    limit = max_size if max_size is not None else settings.MAX_UPLOAD_SIZE
    payload = "".join(payload.split())
    # Every 4 base64 characters decode to at most 3 bytes
    if len(payload) // 4 * 3 > limit + 3:
        raise PayloadTooLarge(
            f"Image exceeds the {limit // (1024 * 1024)}MB limit",
            size=len(payload) // 4 * 3,
            limit=limit,
        )
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UnsupportedMedia("Invalid base64 image data") from exc

    declared_type = normalise_content_type(header[len("data:"):].split(";", 1)[0])
    return data, declared_type
