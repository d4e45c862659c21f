"""Print job entry point: validate sizes, find the original, embed it."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from .assets import AssetFetcher, resolve_original_asset
from .config import Settings, get_settings
from .embedder import embed_image_to_pdf
from .errors import InvalidDimensionError
from .utils import CM_PER_INCH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrintJobResult:
    buffer: bytes
    info: dict = field(default_factory=dict)


def normalize_mm(value, code: str, allow_zero: bool = False) -> float:
    """Centimeters to millimeters at 0.1 mm resolution."""
    try:
        mm = round(float(value) * 10, 1)
    except (TypeError, ValueError) as exc:
        raise InvalidDimensionError(f"{code}: {value!r} is not a number", code=code, value=value) from exc
    if not math.isfinite(mm) or mm < 0 or (mm == 0 and not allow_zero):
        raise InvalidDimensionError(f"{code}: {value!r} is out of range", code=code, value=value)
    return mm


def generate_print_pdf(
    width_cm,
    height_cm,
    margin_cm=0,
    original_object_key: Optional[str] = None,
    original_bucket: Optional[str] = None,
    original_url: Optional[str] = None,
    original_buffer: Optional[bytes] = None,
    asset_fetcher: Optional[AssetFetcher] = None,
    background: Optional[str] = None,
    rid: Optional[str] = None,
    diag_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> PrintJobResult:
    """Produce the print PDF for an order line.

    ``width_cm``/``height_cm`` are the printable area; ``margin_cm`` is
    added on every side as bleed.
    """
    settings = settings or get_settings()
    width_mm = normalize_mm(width_cm, "invalid_width_cm")
    height_mm = normalize_mm(height_cm, "invalid_height_cm")
    margin_mm = normalize_mm(margin_cm if margin_cm is not None else 0, "invalid_margin_cm", allow_zero=True)
    area_w_cm = width_mm / 10
    area_h_cm = height_mm / 10
    margin = margin_mm / 10
    logger.info(
        f"[{diag_id or '-'}|{rid or '-'}] Print job {area_w_cm}x{area_h_cm}cm, margin {margin}cm"
    )

    asset = resolve_original_asset(
        original_buffer=original_buffer,
        original_object_key=original_object_key,
        original_bucket=original_bucket,
        original_url=original_url,
        asset_fetcher=asset_fetcher,
        rid=rid,
        diag_id=diag_id,
        settings=settings,
    )

    embedded = embed_image_to_pdf(
        asset.buffer,
        background=background,
        bleed_cm=margin,
        width_cm=area_w_cm,
        height_cm=area_h_cm,
        diag_id=diag_id,
        settings=settings,
    )

    orientation = embedded.orientation
    density = embedded.geometry.density_ppi
    offset_px = round(margin / CM_PER_INCH * density)
    info = {
        "page_width_cm": embedded.geometry.page_width_cm,
        "page_height_cm": embedded.geometry.page_height_cm,
        "margin_cm": margin,
        "user_unit": embedded.geometry.user_unit,
        "area": {
            "width_cm": area_w_cm,
            "height_cm": area_h_cm,
            "width_px": orientation.width_px,
            "height_px": orientation.height_px,
        },
        "artwork": {
            "width_px": orientation.width_px,
            "height_px": orientation.height_px,
            "offset_left_px": offset_px,
            "offset_top_px": offset_px,
            "scale": 1,
            "density_ppi": density,
        },
        "source": {
            "mime": embedded.diagnostics.source_mime,
            "format": embedded.diagnostics.source_format,
            "origin": asset.origin,
            "bytes": len(asset.buffer),
        },
        "embedded_format": embedded.embedded_format,
        "diagnostics": embedded.diagnostics.to_dict(),
    }
    return PrintJobResult(buffer=embedded.pdf_buffer, info=info)
