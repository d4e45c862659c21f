"""Physical sizing, bleed and EXIF orientation math.

All lengths reported from here are real PDF points (1/72 inch). The
``user_unit`` factor only affects how coordinates are written into the
page, never the values in ``PageGeometry``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

from PIL import Image

from .errors import InvalidDimensionError
from .utils import CM_PER_INCH, POINTS_PER_INCH, cm_to_points, pixels_to_points

logger = logging.getLogger(__name__)

PDF_MAX_POINTS = 14400
MAX_USER_UNIT = 75


@dataclass(frozen=True)
class PhysicalSpec:
    width_cm: Optional[float] = None
    height_cm: Optional[float] = None
    bleed_cm: float = 0.0
    target_ppi: Optional[float] = None

    def __post_init__(self):
        if (self.width_cm is None) != (self.height_cm is None):
            missing = "invalid_height_cm" if self.height_cm is None else "invalid_width_cm"
            raise InvalidDimensionError(
                "width_cm and height_cm must be given together",
                code=missing,
                width_cm=self.width_cm,
                height_cm=self.height_cm,
            )
        if self.width_cm is not None and not _positive(self.width_cm):
            raise InvalidDimensionError("width_cm must be positive", code="invalid_width_cm", width_cm=self.width_cm)
        if self.height_cm is not None and not _positive(self.height_cm):
            raise InvalidDimensionError("height_cm must be positive", code="invalid_height_cm", height_cm=self.height_cm)
        if not _finite(self.bleed_cm) or self.bleed_cm < 0:
            raise InvalidDimensionError("bleed_cm must be non-negative", code="invalid_bleed_cm", bleed_cm=self.bleed_cm)
        if self.target_ppi is not None and not _positive(self.target_ppi):
            raise InvalidDimensionError("target_ppi must be positive", code="invalid_target_ppi", target_ppi=self.target_ppi)

    @property
    def has_physical_size(self) -> bool:
        return self.width_cm is not None


def _finite(value) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def _positive(value) -> bool:
    return _finite(value) and float(value) > 0


@dataclass(frozen=True)
class _OrientationRule:
    code: int
    name: str
    rotation_deg: int
    mirrored: bool
    u: tuple[int, int]
    v: tuple[int, int]
    origin: tuple[int, int]
    transpose: Optional[Image.Transpose]

    @property
    def swaps_dimensions(self) -> bool:
        return self.u[0] == 0


# u/v are where the image x and y unit vectors land inside the target
# rectangle, origin is the corner the image unit origin lands on (in units
# of the rectangle width and height).
_ORIENTATION_TABLE = {
    1: _OrientationRule(1, "identity", 0, False, (1, 0), (0, 1), (0, 0), None),
    2: _OrientationRule(2, "mirror-horizontal", 0, True, (-1, 0), (0, 1), (1, 0), Image.Transpose.FLIP_LEFT_RIGHT),
    3: _OrientationRule(3, "rotate-180", 180, False, (-1, 0), (0, -1), (1, 1), Image.Transpose.ROTATE_180),
    4: _OrientationRule(4, "mirror-vertical", 180, True, (1, 0), (0, -1), (0, 1), Image.Transpose.FLIP_TOP_BOTTOM),
    5: _OrientationRule(5, "transpose", 90, True, (0, -1), (-1, 0), (1, 1), Image.Transpose.TRANSPOSE),
    6: _OrientationRule(6, "rotate-90", 90, False, (0, -1), (1, 0), (0, 1), Image.Transpose.ROTATE_270),
    7: _OrientationRule(7, "transverse", 270, True, (0, 1), (1, 0), (0, 0), Image.Transpose.TRANSVERSE),
    8: _OrientationRule(8, "rotate-270", 270, False, (0, 1), (-1, 0), (1, 0), Image.Transpose.ROTATE_90),
}

_SIGNATURES = {(rule.u, rule.v): rule.code for rule in _ORIENTATION_TABLE.values()}


@dataclass(frozen=True)
class OrientationInfo:
    code: int
    name: str
    rotation_deg: int
    mirrored: bool
    swaps_dimensions: bool
    width_px: int
    height_px: int
    source_width_px: int
    source_height_px: int

    @property
    def rule(self) -> _OrientationRule:
        return _ORIENTATION_TABLE[self.code]

    @property
    def transpose(self) -> Optional[Image.Transpose]:
        return self.rule.transpose

    def apply(self, image: Image.Image) -> Image.Image:
        """Return ``image`` as a viewer would display it."""
        method = self.transpose
        return image.transpose(method) if method is not None else image


def resolve_orientation(code, width_px: int, height_px: int) -> OrientationInfo:
    """Map a raw EXIF orientation to its transform; unknown codes become identity."""
    try:
        resolved = int(code) if code is not None else 1
    except (TypeError, ValueError):
        resolved = 0
    rule = _ORIENTATION_TABLE.get(resolved)
    if rule is None:
        logger.warning(f"Unknown EXIF orientation {code!r}, falling back to identity")
        rule = _ORIENTATION_TABLE[1]

    if rule.swaps_dimensions:
        eff_w, eff_h = height_px, width_px
    else:
        eff_w, eff_h = width_px, height_px

    return OrientationInfo(
        code=rule.code,
        name=rule.name,
        rotation_deg=rule.rotation_deg,
        mirrored=rule.mirrored,
        swaps_dimensions=rule.swaps_dimensions,
        width_px=eff_w,
        height_px=eff_h,
        source_width_px=width_px,
        source_height_px=height_px,
    )


def placement_matrix(orientation_code: int, x0: float, y0: float, width: float, height: float) -> tuple:
    """PDF ``cm`` operands drawing the image unit square into a rectangle.

    The rectangle is given in PDF user space with a bottom-left origin.
    Mirrored orientations come out as a negative extent on one axis.
    """
    rule = _ORIENTATION_TABLE.get(orientation_code, _ORIENTATION_TABLE[1])
    a = rule.u[0] * width
    b = rule.u[1] * height
    c = rule.v[0] * width
    d = rule.v[1] * height
    e = x0 + rule.origin[0] * width
    f = y0 + rule.origin[1] * height
    return (a, b, c, d, e, f)


def orientation_from_matrix(matrix, tolerance: float = 1e-6) -> Optional[tuple[int, tuple[float, float, float, float]]]:
    """Invert ``placement_matrix``.

    Returns ``(orientation_code, (x0, y0, width, height))`` or ``None`` when
    the matrix is not an axis-aligned placement.
    """
    a, b, c, d, e, f = (float(value) for value in matrix)

    def sign(value):
        if abs(value) <= tolerance:
            return 0
        return 1 if value > 0 else -1

    u = (sign(a), sign(b))
    v = (sign(c), sign(d))
    code = _SIGNATURES.get((u, v))
    if code is None:
        return None

    rule = _ORIENTATION_TABLE[code]
    width = abs(a) + abs(c)
    height = abs(b) + abs(d)
    x0 = e - rule.origin[0] * width
    y0 = f - rule.origin[1] * height
    return code, (x0, y0, width, height)


@dataclass(frozen=True)
class PageGeometry:
    page_width_pt: float
    page_height_pt: float
    image_width_pt: float
    image_height_pt: float
    bleed_pt: float
    density_ppi: float
    user_unit: int = 1

    @property
    def image_rect(self) -> tuple[float, float, float, float]:
        """``(x0, y0, x1, y1)`` of the artwork in real points."""
        return (
            self.bleed_pt,
            self.bleed_pt,
            self.bleed_pt + self.image_width_pt,
            self.bleed_pt + self.image_height_pt,
        )

    @property
    def page_width_cm(self) -> float:
        return self.page_width_pt / POINTS_PER_INCH * CM_PER_INCH

    @property
    def page_height_cm(self) -> float:
        return self.page_height_pt / POINTS_PER_INCH * CM_PER_INCH

    @property
    def image_width_cm(self) -> float:
        return self.image_width_pt / POINTS_PER_INCH * CM_PER_INCH

    @property
    def image_height_cm(self) -> float:
        return self.image_height_pt / POINTS_PER_INCH * CM_PER_INCH

    def scaled(self, value: float) -> float:
        """Real points to the page's user-space units."""
        return value / self.user_unit


def resolve_user_unit(width_pt: float, height_pt: float) -> int:
    """Pages beyond the 200 inch PDF limit are written with a /UserUnit."""
    max_dimension = max(width_pt, height_pt)
    if max_dimension <= PDF_MAX_POINTS:
        return 1
    computed = math.ceil(max_dimension / PDF_MAX_POINTS)
    return min(MAX_USER_UNIT, max(1, computed))


def resolve_page_geometry(spec: PhysicalSpec, orientation: OrientationInfo, default_ppi: float = 72.0) -> PageGeometry:
    bleed_pt = cm_to_points(spec.bleed_cm)

    if spec.has_physical_size:
        image_w = cm_to_points(spec.width_cm)
        image_h = cm_to_points(spec.height_cm)
        density = min(
            orientation.width_px / (spec.width_cm / CM_PER_INCH),
            orientation.height_px / (spec.height_cm / CM_PER_INCH),
        )
    else:
        density = float(spec.target_ppi or default_ppi)
        image_w = pixels_to_points(orientation.width_px, density)
        image_h = pixels_to_points(orientation.height_px, density)

    page_w = image_w + 2 * bleed_pt
    page_h = image_h + 2 * bleed_pt
    user_unit = resolve_user_unit(page_w, page_h)
    if user_unit != 1:
        logger.info(f"Page {page_w:.1f}x{page_h:.1f}pt exceeds {PDF_MAX_POINTS}pt, using UserUnit {user_unit}")

    return PageGeometry(
        page_width_pt=page_w,
        page_height_pt=page_h,
        image_width_pt=image_w,
        image_height_pt=image_h,
        bleed_pt=bleed_pt,
        density_ppi=density,
        user_unit=user_unit,
    )
