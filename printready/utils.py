import math
import re
from typing import Any, Optional

from PIL import Image

CM_PER_INCH = 2.54
MM_PER_INCH = 25.4
POINTS_PER_INCH = 72.0
DEFAULT_BACKGROUND = "#ffffff"

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8"

_HEX_COLOR = re.compile(r"^#?([0-9a-f]{3}|[0-9a-f]{6})$", re.IGNORECASE)


def cm_to_points(cm: float) -> float:
    return cm / CM_PER_INCH * POINTS_PER_INCH


def points_to_cm(points: float) -> float:
    return points / POINTS_PER_INCH * CM_PER_INCH


def pixels_to_points(pixels: float, ppi: float) -> float:
    return pixels / ppi * POINTS_PER_INCH


def cm_to_pixels(cm: float, ppi: float) -> int:
    """Physical length in centimeters to a whole pixel count at ``ppi``."""
    return round(cm * ppi / CM_PER_INCH)


def calculate_desired_bleed_in_pixels(bleed_mm: float, desired_ppi: float) -> int:
    """Calculate bleed in pixels from millimeters and PPI."""
    bleed_inch = bleed_mm / MM_PER_INCH
    return round(bleed_inch * desired_ppi)


def normalize_background(background: Optional[str]) -> str:
    """Return a ``#rrggbb`` string; anything unparsable becomes white."""
    if not background:
        return DEFAULT_BACKGROUND
    raw = str(background).strip()
    match = _HEX_COLOR.match(raw)
    if not match:
        return DEFAULT_BACKGROUND
    value = match.group(1).lower()
    if len(value) == 3:
        value = "".join(ch + ch for ch in value)
    return f"#{value}"


def hex_to_rgb(hex_color: Optional[str]) -> tuple[int, int, int]:
    value = normalize_background(hex_color)[1:]
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


def detect_image_kind(buffer: bytes) -> Optional[str]:
    """Sniff the container format from the leading signature bytes."""
    if buffer[:8] == PNG_SIGNATURE:
        return "png"
    if buffer[:2] == JPEG_SIGNATURE:
        return "jpeg"
    return None


def upscale_with_LANCZOS(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Resample image to ``size`` using the LANCZOS filter."""
    if image.size == size:
        return image
    return image.resize(size, Image.LANCZOS)


def format_pdf_number(value: float) -> str:
    """Compact, deterministic real for PDF content streams."""
    text = f"{value:.5f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text


def json_safe(value: Any) -> Any:
    """Make diagnostics serialisable with a strict JSON encoder."""
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    if isinstance(value, float):
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if math.isnan(value):
            return None
        return value
    if isinstance(value, bytes):
        return {"bytes": len(value)}
    return value
