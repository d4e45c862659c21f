"""Source image inspection.

Reads just enough of a raster to plan the PDF: pixel size, container
format, EXIF orientation, an embedded ICC profile and whether there is an
alpha channel. Pixel data is only decoded later, once the size has passed
the configured ceiling.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ImageMetadataUnavailableError, ImageTooLargeError, InvalidImageBufferError
from .utils import detect_image_kind

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112

_ICC_COMPONENTS = {
    b"GRAY": 1,
    b"RGB ": 3,
    b"CMYK": 4,
}

_ALPHA_MODES = ("RGBA", "LA", "PA", "RGBa", "La")
HIGH_BIT_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I", "F")


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    width: int
    height: int
    format: str
    mode: str
    orientation: int = 1
    icc_profile: Optional[bytes] = None
    has_alpha: bool = False
    dpi: Optional[tuple[float, float]] = None
    inverted_cmyk: bool = False

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def mime(self) -> Optional[str]:
        return Image.MIME.get(self.format.upper())


def icc_components(icc_profile: Optional[bytes]) -> Optional[int]:
    """Number of color components declared in an ICC profile header."""
    if not icc_profile or len(icc_profile) < 20:
        return None
    return _ICC_COMPONENTS.get(bytes(icc_profile[16:20]))


def _read_orientation(image: Image.Image) -> int:
    try:
        value = image.getexif().get(EXIF_ORIENTATION_TAG, 1)
    except (OSError, ValueError, SyntaxError) as exc:
        logger.warning(f"Unable to read EXIF block: {exc}")
        return 1
    try:
        return int(value)
    except (TypeError, ValueError):
        return 1


def _has_alpha(image: Image.Image) -> bool:
    if image.mode in _ALPHA_MODES:
        return True
    return "transparency" in image.info


def read_source_image(buffer: bytes, max_pixels: int) -> SourceImage:
    """Inspect ``buffer`` without decoding pixel data.

    Raises:
        InvalidImageBufferError: if ``buffer`` is not a non-empty bytes object.
        ImageMetadataUnavailableError: if the header cannot be read.
        ImageTooLargeError: if ``width * height`` exceeds ``max_pixels``.
    """
    if not isinstance(buffer, (bytes, bytearray, memoryview)) or len(buffer) == 0:
        raise InvalidImageBufferError("Image buffer must be non-empty bytes")
    data = bytes(buffer)

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            image = Image.open(BytesIO(data))
            width, height = image.size
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc), max_pixels=max_pixels) from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ImageMetadataUnavailableError(f"Unable to read image header: {exc}") from exc

    if width <= 0 or height <= 0:
        raise ImageMetadataUnavailableError("Image reports non-positive dimensions", width=width, height=height)

    if width * height > max_pixels:
        logger.warning(f"Rejecting {width}x{height}px image: exceeds {max_pixels} pixel ceiling")
        raise ImageTooLargeError(
            f"Image has {width * height} pixels, limit is {max_pixels}",
            width=width,
            height=height,
            max_pixels=max_pixels,
        )

    fmt = (image.format or detect_image_kind(data) or "unknown").lower()
    if fmt == "jpg":
        fmt = "jpeg"
    dpi = image.info.get("dpi")
    source = SourceImage(
        data=data,
        width=width,
        height=height,
        format=fmt,
        mode=image.mode,
        orientation=_read_orientation(image),
        icc_profile=image.info.get("icc_profile") or None,
        has_alpha=_has_alpha(image),
        dpi=(float(dpi[0]), float(dpi[1])) if dpi else None,
        # Adobe APP14 CMYK stores inverted samples
        inverted_cmyk=image.mode == "CMYK" and "adobe" in image.info,
    )
    logger.info(
        f"Source image: {width}x{height}px format={fmt} mode={image.mode} "
        f"orientation={source.orientation} icc={'yes' if source.icc_profile else 'no'} "
        f"alpha={source.has_alpha}"
    )
    return source


def decode_pixels(source: SourceImage) -> Image.Image:
    """Fully decode the source raster (no orientation applied)."""
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            image = Image.open(BytesIO(source.data))
            image.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ImageMetadataUnavailableError(f"Unable to decode image pixels: {exc}") from exc
    return image


def _scale_high_bit(image: Image.Image) -> Image.Image:
    """Rescale 16-bit or float samples to 0..255 by their nominal range."""
    samples = np.asarray(image, dtype=np.float64)
    if image.mode == "F":
        full_scale = 1.0 if samples.size and samples.max() <= 1.0 else 255.0
    else:
        full_scale = 65535.0
    scaled = np.clip(np.rint(samples * (255.0 / full_scale)), 0, 255)
    return Image.fromarray(scaled.astype(np.uint8))


def to_rgb_reference(image: Image.Image) -> Image.Image:
    """Flatten any decoded mode to RGB or RGBA for pixel comparisons."""
    if image.mode in HIGH_BIT_MODES:
        return _scale_high_bit(image).convert("RGB")
    if image.mode in ("RGB", "RGBA"):
        return image
    if _has_alpha(image):
        return image.convert("RGBA")
    return image.convert("RGB")
