"""Editor-canvas placement rendered at print resolution.

The editor works on a canvas in screen pixels. A padding box on that
canvas maps to the printable area, and the placement box says where the
artwork sits (it may overhang the canvas). The print raster is the
printable area plus bleed on every side; the inner raster is the same
image without the bleed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from .config import Settings, get_settings
from .errors import ImageMetadataUnavailableError, InvalidBBoxError, InvalidDimensionError, InvalidImageBufferError
from .mask_helpers import apply_rounded_mask, fit_into_box
from .utils import calculate_desired_bleed_in_pixels, cm_to_pixels, hex_to_rgb

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_BACKGROUND = "#000000"
FIT_MODES = ("cover", "contain")


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    w: float
    h: float
    radius: float = 0

    @classmethod
    def from_value(cls, value: Any) -> "Box":
        if isinstance(value, Box):
            return value
        if isinstance(value, dict):
            return cls(
                x=float(value.get("x", 0)),
                y=float(value.get("y", 0)),
                w=float(value.get("w", value.get("width", 0))),
                h=float(value.get("h", value.get("height", 0))),
                radius=float(value.get("radius", value.get("r", 0)) or 0),
            )
        x, y, w, h, *rest = value
        return cls(float(x), float(y), float(w), float(h), float(rest[0]) if rest else 0)

    def as_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h, "radius": self.radius}


@dataclass(frozen=True)
class CompositionSpec:
    canvas_px: tuple[int, int]
    place_px: Box
    width_cm: float
    height_cm: float
    pad_px: Optional[Box] = None
    bleed_mm: float = 0
    rotate_deg: float = 0
    fit_mode: str = "cover"
    background_hex: Optional[str] = None
    dpi: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CompositionSpec":
        """Build from an editor payload (accepts ``w_cm``/``bg_hex`` style keys too)."""
        canvas = data.get("canvas_px") or {}
        if isinstance(canvas, dict):
            canvas_px = (int(canvas.get("w", canvas.get("width", 0))), int(canvas.get("h", canvas.get("height", 0))))
        else:
            canvas_px = (int(canvas[0]), int(canvas[1]))
        pad = data.get("pad_px")
        return cls(
            canvas_px=canvas_px,
            place_px=Box.from_value(data.get("place_px") or {}),
            width_cm=float(data.get("width_cm", data.get("w_cm", 0)) or 0),
            height_cm=float(data.get("height_cm", data.get("h_cm", 0)) or 0),
            pad_px=Box.from_value(pad) if pad else None,
            bleed_mm=float(data.get("bleed_mm") or 0),
            rotate_deg=float(data.get("rotate_deg") or 0),
            fit_mode=str(data.get("fit_mode") or "cover"),
            background_hex=data.get("background_hex", data.get("bg_hex")),
            dpi=int(data["dpi"]) if data.get("dpi") else None,
        )


@dataclass(frozen=True)
class ComposeResult:
    print_buffer: bytes
    inner_buffer: bytes
    format: str
    debug: dict = field(default_factory=dict)

    @property
    def media_type(self) -> str:
        return "image/png" if self.format == "png" else "image/jpeg"


def _encode(image: Image.Image, fmt: str, quality: int) -> bytes:
    with BytesIO() as buf:
        if fmt == "png":
            image.save(buf, format="PNG")
        else:
            image.convert("RGB").save(buf, format="JPEG", quality=quality)
        return buf.getvalue()


def _open_source(source_buffer: bytes) -> Image.Image:
    if not isinstance(source_buffer, (bytes, bytearray)) or len(source_buffer) == 0:
        raise InvalidImageBufferError("Source buffer must be non-empty bytes")
    try:
        image = Image.open(BytesIO(bytes(source_buffer)))
        image.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ImageMetadataUnavailableError(f"Unable to decode source image: {exc}") from exc
    return ImageOps.exif_transpose(image)


def compose(spec: CompositionSpec, source_buffer: bytes, settings: Optional[Settings] = None) -> ComposeResult:
    """Render the placed artwork at print resolution.

    Raises:
        InvalidDimensionError: non-positive physical size.
        InvalidBBoxError: the placed artwork does not overlap the output.
    """
    settings = settings or get_settings()
    dpi = spec.dpi or settings.compose_dpi

    if not spec.width_cm or spec.width_cm <= 0:
        raise InvalidDimensionError("width_cm must be positive", code="invalid_width_cm", width_cm=spec.width_cm)
    if not spec.height_cm or spec.height_cm <= 0:
        raise InvalidDimensionError("height_cm must be positive", code="invalid_height_cm", height_cm=spec.height_cm)
    if spec.bleed_mm < 0:
        raise InvalidDimensionError("bleed_mm must be non-negative", code="invalid_bleed_cm", bleed_mm=spec.bleed_mm)

    inner_w_px = cm_to_pixels(spec.width_cm, dpi)
    inner_h_px = cm_to_pixels(spec.height_cm, dpi)
    bleed_px = calculate_desired_bleed_in_pixels(spec.bleed_mm, dpi)
    out_w_px = inner_w_px + 2 * bleed_px
    out_h_px = inner_h_px + 2 * bleed_px

    pad = spec.pad_px or Box(0, 0, spec.canvas_px[0], spec.canvas_px[1])
    place = spec.place_px
    debug = {
        "dpi": dpi,
        "inner_w_px": inner_w_px,
        "inner_h_px": inner_h_px,
        "out_w_px": out_w_px,
        "out_h_px": out_h_px,
        "bleed_px": bleed_px,
        "canvas_px": {"w": spec.canvas_px[0], "h": spec.canvas_px[1]},
        "pad": pad.as_dict(),
        "place": place.as_dict(),
        "rotate_deg": spec.rotate_deg,
        "fit_mode": spec.fit_mode,
    }
    if pad.w <= 0 or pad.h <= 0:
        raise InvalidBBoxError("Padding box must have a positive size", debug=debug)

    scale_x = inner_w_px / pad.w
    scale_y = inner_h_px / pad.h
    scale = min(scale_x, scale_y)
    target_w = round(place.w * scale)
    target_h = round(place.h * scale)
    dest_x = bleed_px + round((place.x - pad.x) * scale)
    dest_y = bleed_px + round((place.y - pad.y) * scale)
    debug.update({
        "scale_x": scale_x,
        "scale_y": scale_y,
        "scale": scale,
        "target_w": target_w,
        "target_h": target_h,
        "dest": {"x": dest_x, "y": dest_y},
    })
    if target_w <= 0 or target_h <= 0:
        debug.update({"clip_x": 0, "clip_y": 0, "clip_w": target_w, "clip_h": target_h})
        raise InvalidBBoxError("Placement box has no area at print scale", debug=debug)

    fit_mode = spec.fit_mode if spec.fit_mode in FIT_MODES else "cover"
    layer = fit_into_box(_open_source(source_buffer), (target_w, target_h), fit_mode)

    # Pillow rotates counter-clockwise
    if spec.rotate_deg % 360:
        layer = layer.rotate(-spec.rotate_deg, resample=Image.BICUBIC, expand=True)
    rotated_w, rotated_h = layer.size
    left = dest_x + round((target_w - rotated_w) / 2)
    top = dest_y + round((target_h - rotated_h) / 2)

    cut_left = max(0, -left)
    cut_top = max(0, -top)
    cut_right = max(0, left + rotated_w - out_w_px)
    cut_bottom = max(0, top + rotated_h - out_h_px)
    clip_x = cut_left
    clip_y = cut_top
    clip_w = rotated_w - cut_left - cut_right
    clip_h = rotated_h - cut_top - cut_bottom
    debug.update({
        "rotated_w": rotated_w,
        "rotated_h": rotated_h,
        "clip_x": clip_x,
        "clip_y": clip_y,
        "clip_w": clip_w,
        "clip_h": clip_h,
    })
    if clip_w <= 0 or clip_h <= 0:
        logger.error(f"Placement falls outside the {out_w_px}x{out_h_px}px output: clip {clip_w}x{clip_h}")
        raise InvalidBBoxError("Placed artwork does not overlap the print area", debug=debug)

    clipped = layer.crop((clip_x, clip_y, clip_x + clip_w, clip_y + clip_h))
    paste_at = (max(0, left), max(0, top))

    background = spec.background_hex or DEFAULT_COMPOSE_BACKGROUND
    canvas = Image.new("RGB", (out_w_px, out_h_px), hex_to_rgb(background))
    canvas.paste(clipped, paste_at, clipped)

    radius_scaled = round(place.radius * scale) + bleed_px if place.radius > 0 else 0
    debug["radius_scaled"] = radius_scaled
    if radius_scaled > 0:
        print_image = apply_rounded_mask(canvas, radius_scaled)
        fmt = "png"
    else:
        print_image = canvas
        fmt = "jpeg"

    inner_image = print_image.crop((bleed_px, bleed_px, bleed_px + inner_w_px, bleed_px + inner_h_px))
    quality = settings.compose_jpeg_quality
    result = ComposeResult(
        print_buffer=_encode(print_image, fmt, quality),
        inner_buffer=_encode(inner_image, fmt, quality),
        format=fmt,
        debug=debug,
    )
    logger.info(
        f"Composed {out_w_px}x{out_h_px}px ({fmt}) at {dpi}dpi, scale={scale:.4f}, "
        f"clip=({clip_x},{clip_y},{clip_w},{clip_h})"
    )
    return result
