"""Input image normalization.

Every uploaded photo goes through :func:`normalize` exactly once before any
style is generated.  The result is always a JPEG that:

- has EXIF orientation applied to the pixels
- fits inside ``max_dimension`` x ``max_dimension`` (aspect ratio kept,
  never upscaled)

HEIC/HEIF containers (the default format of iPhone photos) are recognised by
the ISO-BMFF brand stored at byte offset 8, not by file extension or the
declared MIME type, and decoded with ``pillow-heif`` first.
"""

from __future__ import annotations

import logging
from io import BytesIO

import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import UnsupportedFormat

logger = logging.getLogger(__name__)

HEIC_BRANDS = frozenset({"heic", "heix", "hevc", "hevx", "heim", "heis", "mif1"})
HEIC_CONVERSION_QUALITY = 95
# 48 MP phone sensors fit; anything larger is refused before decoding.
DEFAULT_MAX_PIXELS = 64_000_000


def is_heic(data: bytes) -> bool:
    """Return True when *data* starts with an HEIC/HEIF ``ftyp`` brand."""
    if len(data) < 12:
        return False
    brand = data[8:12].decode("ascii", errors="replace").lower()
    return brand in HEIC_BRANDS


def convert_heic_to_jpeg(data: bytes, quality: int = HEIC_CONVERSION_QUALITY) -> bytes:
    """Decode an HEIC container and re-encode its primary image as JPEG.

    Raises:
        UnsupportedFormat: If the container cannot be decoded.
    """
    try:
        heif_file = pillow_heif.open_heif(BytesIO(data))
        image = heif_file.to_pillow()
        # Carry EXIF across so orientation can still be corrected downstream.
        exif = image.info.get("exif")
        buffer = BytesIO()
        save_kwargs = {"format": "JPEG", "quality": quality}
        if exif:
            save_kwargs["exif"] = exif
        image.convert("RGB").save(buffer, **save_kwargs)
    except Exception as exc:
        raise UnsupportedFormat(f"Could not convert HEIC image: {exc}") from exc
    return buffer.getvalue()


def reencode(
    data: bytes, max_dimension: int, quality: int, max_pixels: int = DEFAULT_MAX_PIXELS
) -> bytes:
    """Orient, bound and re-encode an image as JPEG.

    Raises:
        UnidentifiedImageError, OSError: If Pillow cannot decode *data*.
        Image.DecompressionBombError: If Pillow refuses the pixel count.
        UnsupportedFormat: If the image has more than *max_pixels* pixels.
    """
    with Image.open(BytesIO(data)) as opened:
        # Image.open only reads the header, so this runs before any decoding.
        if opened.width * opened.height > max_pixels:
            raise UnsupportedFormat(
                f"Image is too large to process: {opened.width}x{opened.height} pixels"
            )
        image = ImageOps.exif_transpose(opened)
        image = image.convert("RGB")
        # thumbnail() keeps aspect ratio and only ever shrinks.
        image.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
        buffer = BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def normalize(
    data: bytes,
    max_dimension: int = 1500,
    quality: int = 95,
    max_pixels: int = DEFAULT_MAX_PIXELS,
) -> bytes:
    """Convert an uploaded image into the canonical working JPEG.

    Args:
        data: Raw uploaded bytes.
        max_dimension: Longest allowed side in pixels.
        quality: JPEG quality of the output.
        max_pixels: Largest accepted input, in pixels.

    Returns:
        JPEG bytes ready for synthesis.

    Raises:
        UnsupportedFormat: If the image cannot be decoded and no HEIC
            conversion produced usable bytes, or if it exceeds *max_pixels*.
    """
    if not data:
        raise UnsupportedFormat("Empty image payload")

    converted = False
    if is_heic(data):
        logger.info("HEIC container detected (%d bytes), converting to JPEG", len(data))
        data = convert_heic_to_jpeg(data)
        converted = True

    try:
        return reencode(data, max_dimension, quality, max_pixels)
    except Image.DecompressionBombError as exc:
        raise UnsupportedFormat(f"Image is too large to process: {exc}") from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        if converted:
            logger.warning("Re-encoding converted HEIC failed (%s), using converted bytes", exc)
            return data
        raise UnsupportedFormat(f"Unsupported or corrupt image: {exc}") from exc
