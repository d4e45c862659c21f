"""Read the image back out of a finished PDF and prove it matches the source.

The embedded stream, its soft mask and the placement matrix are pulled from
the produced bytes with PyMuPDF. Two RGB composites are then rendered at the
same bounded size with Pillow: one from the decoded source pixels placed
where the page geometry says they belong, one from what the PDF actually
contains. PSNR and SSIM between them decide whether the PDF may leave the
pipeline.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass
from io import BytesIO
from typing import Optional

import fitz
import numpy as np
from PIL import Image

from .config import Settings, get_settings
from .errors import JpegStreamMismatchError, QaCheckFailedError
from .geometry import OrientationInfo, PageGeometry, orientation_from_matrix, resolve_orientation
from .metadata_reader import SourceImage, decode_pixels, to_rgb_reference
from .utils import POINTS_PER_INCH, hex_to_rgb

logger = logging.getLogger(__name__)

SSIM_WINDOW = 7
_SSIM_C1 = (0.01 * 255) ** 2
_SSIM_C2 = (0.03 * 255) ** 2

PLACEMENT_TOLERANCE_PT = 0.01

_NUMBER = rb"[-+]?(?:\d+\.?\d*|\.\d+)"
_DRAW_RE = re.compile(
    rb"(" + _NUMBER + rb")\s+(" + _NUMBER + rb")\s+(" + _NUMBER + rb")\s+("
    + _NUMBER + rb")\s+(" + _NUMBER + rb")\s+(" + _NUMBER + rb")\s+cm\s*/([^\s/]+)\s+Do"
)

_MODES_BY_COMPONENTS = {1: "L", 3: "RGB", 4: "CMYK"}


@dataclass(frozen=True)
class QaReport:
    psnr: float
    ssim: Optional[float]
    jpeg_stream_match: Optional[bool]
    method: str
    density_ppi: float
    width_px: int
    height_px: int
    passed: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ExtractedImage:
    """The first image XObject of a page, as stored in the PDF."""

    name: str
    filter: Optional[str]
    raw: bytes
    width: int
    height: int
    components: int
    alpha: Optional[bytes]
    matrix: tuple
    user_unit: float

    def to_image(self) -> Image.Image:
        if self.filter == "/DCTDecode":
            image = Image.open(BytesIO(self.raw))
            image.load()
        else:
            mode = _MODES_BY_COMPONENTS.get(self.components, "RGB")
            image = Image.frombytes(mode, (self.width, self.height), self.raw)
        if image.mode not in ("L", "RGB"):
            image = image.convert("RGB")
        if self.alpha is not None:
            mask = Image.frombytes("L", (self.width, self.height), self.alpha)
            image = image.convert("RGB")
            image.putalpha(mask)
        return image


def _key_value(doc: fitz.Document, xref: int, key: str) -> Optional[str]:
    kind, value = doc.xref_get_key(xref, key)
    if kind == "null":
        return None
    return value


def _components_of(doc: fitz.Document, image_xref: int) -> int:
    colorspace = _key_value(doc, image_xref, "ColorSpace") or "/DeviceRGB"
    match = re.search(r"/ICCBased\s+(\d+)\s+0\s+R", colorspace)
    if match:
        return int(_key_value(doc, int(match.group(1)), "N") or 3)
    if "Gray" in colorspace:
        return 1
    if "CMYK" in colorspace:
        return 4
    return 3


def extract_page_image(pdf_buffer: bytes) -> ExtractedImage:
    """Pull the first drawn image, its mask and its ``cm`` matrix out of page 1."""
    with fitz.open(stream=pdf_buffer, filetype="pdf") as doc:
        page = doc[0]
        images = page.get_images(full=True)
        if not images:
            raise QaCheckFailedError("No image XObject found on page", reason="image_missing")
        xref, smask = images[0][0], images[0][1]
        name = images[0][7]

        filter_name = _key_value(doc, xref, "Filter")
        if filter_name == "/DCTDecode":
            raw = doc.xref_stream_raw(xref)
        else:
            raw = doc.xref_stream(xref)
        alpha = doc.xref_stream(smask) if smask else None

        matrix = None
        for match in _DRAW_RE.finditer(page.read_contents()):
            if match.group(7).decode("latin1") == name:
                matrix = tuple(float(value) for value in match.groups()[:6])
                break
        if matrix is None:
            raise QaCheckFailedError(f"No placement matrix found for /{name}", reason="placement_mismatch")

        user_unit = float(_key_value(doc, page.xref, "UserUnit") or 1)

        return ExtractedImage(
            name=name,
            filter=filter_name,
            raw=raw,
            width=int(_key_value(doc, xref, "Width")),
            height=int(_key_value(doc, xref, "Height")),
            components=_components_of(doc, xref),
            alpha=alpha,
            matrix=matrix,
            user_unit=user_unit,
        )


def compute_qa_density(geometry: PageGeometry, pixel_budget: int) -> float:
    page_sq_in = (geometry.page_width_pt / POINTS_PER_INCH) * (geometry.page_height_pt / POINTS_PER_INCH)
    budget_ppi = math.sqrt(pixel_budget / page_sq_in)
    return min(geometry.density_ppi, budget_ppi)


def render_composite(image: Image.Image, geometry: PageGeometry, background: str, density: float) -> Image.Image:
    """Place an upright image on a background canvas at ``density`` px/inch."""
    scale = density / POINTS_PER_INCH
    canvas_size = (
        max(1, round(geometry.page_width_pt * scale)),
        max(1, round(geometry.page_height_pt * scale)),
    )
    box = (
        round(geometry.bleed_pt * scale),
        round(geometry.bleed_pt * scale),
        max(1, round(geometry.image_width_pt * scale)),
        max(1, round(geometry.image_height_pt * scale)),
    )
    canvas = Image.new("RGB", canvas_size, hex_to_rgb(background))
    placed = image.resize((box[2], box[3]), Image.LANCZOS)
    if placed.mode == "RGBA":
        canvas.paste(placed.convert("RGB"), (box[0], box[1]), placed.getchannel("A"))
    else:
        canvas.paste(placed, (box[0], box[1]))
    return canvas


def compute_psnr(reference: Image.Image, candidate: Image.Image) -> float:
    a = np.asarray(reference.convert("RGB"), dtype=np.float64)
    b = np.asarray(candidate.convert("RGB"), dtype=np.float64)
    mse = float(np.mean((a - b) ** 2))
    if mse == 0:
        return math.inf
    return 10 * math.log10(255.0 ** 2 / mse)


def _box_mean(values: np.ndarray, size: int) -> np.ndarray:
    integral = np.pad(values, ((1, 0), (1, 0))).cumsum(axis=0).cumsum(axis=1)
    window = (
        integral[size:, size:]
        - integral[:-size, size:]
        - integral[size:, :-size]
        + integral[:-size, :-size]
    )
    return window / (size * size)


def compute_ssim(reference: Image.Image, candidate: Image.Image, window: int = SSIM_WINDOW) -> Optional[float]:
    """Mean SSIM over ``window``-sized boxes of the luminance channel.

    Returns ``None`` for images too small to hold a single window.
    """
    x = np.asarray(reference.convert("L"), dtype=np.float64)
    y = np.asarray(candidate.convert("L"), dtype=np.float64)
    if min(x.shape) < window:
        return None

    mu_x = _box_mean(x, window)
    mu_y = _box_mean(y, window)
    var_x = _box_mean(x * x, window) - mu_x ** 2
    var_y = _box_mean(y * y, window) - mu_y ** 2
    cov = _box_mean(x * y, window) - mu_x * mu_y

    numerator = (2 * mu_x * mu_y + _SSIM_C1) * (2 * cov + _SSIM_C2)
    denominator = (mu_x ** 2 + mu_y ** 2 + _SSIM_C1) * (var_x + var_y + _SSIM_C2)
    return float(np.mean(numerator / denominator))


def passes_thresholds(psnr: float, ssim: Optional[float], settings: Settings) -> bool:
    psnr_ok = math.isinf(psnr) or psnr >= settings.qa_min_psnr
    ssim_ok = ssim is None or ssim >= settings.qa_min_ssim
    return psnr_ok and ssim_ok


def _check_placement(extracted: ExtractedImage, orientation: OrientationInfo, geometry: PageGeometry) -> None:
    scaled = tuple(value * extracted.user_unit for value in extracted.matrix)
    recovered = orientation_from_matrix(scaled)
    expected_rect = (geometry.bleed_pt, geometry.bleed_pt, geometry.image_width_pt, geometry.image_height_pt)
    if recovered is None:
        raise QaCheckFailedError(
            "Placement matrix is not an axis-aligned orientation",
            reason="placement_mismatch",
            matrix=list(extracted.matrix),
        )
    code, rect = recovered
    tolerance = PLACEMENT_TOLERANCE_PT * extracted.user_unit
    rect_ok = all(abs(got - want) <= tolerance for got, want in zip(rect, expected_rect))
    if code != orientation.code or not rect_ok:
        logger.error(
            f"Placement mismatch: orientation {code} vs {orientation.code}, rect {rect} vs {expected_rect}"
        )
        raise QaCheckFailedError(
            "Embedded image is not placed where the page geometry expects",
            reason="placement_mismatch",
            expected_orientation=orientation.code,
            found_orientation=code,
            expected_rect=list(expected_rect),
            found_rect=list(rect),
        )


def _raster_scores(
    extracted: ExtractedImage,
    reference: Image.Image,
    orientation: OrientationInfo,
    geometry: PageGeometry,
    background: str,
    settings: Settings,
) -> tuple[float, Optional[float], float, tuple[int, int]]:
    density = compute_qa_density(geometry, settings.qa_pixel_budget)
    expected = render_composite(orientation.apply(to_rgb_reference(reference)), geometry, background, density)

    embedded = extracted.to_image()
    if embedded.size != (orientation.source_width_px, orientation.source_height_px):
        logger.info(f"Embedded raster is {embedded.size}, source is "
                    f"{(orientation.source_width_px, orientation.source_height_px)}")
    actual_orientation = resolve_orientation(orientation.code, embedded.width, embedded.height)
    actual = render_composite(actual_orientation.apply(embedded), geometry, background, density)

    psnr = compute_psnr(expected, actual)
    ssim = compute_ssim(expected, actual)
    return psnr, ssim, density, expected.size


def verify_embedded_pdf(
    pdf_buffer: bytes,
    *,
    source: SourceImage,
    orientation: OrientationInfo,
    geometry: PageGeometry,
    background: str,
    reference: Optional[Image.Image] = None,
    passthrough: bool = False,
    settings: Optional[Settings] = None,
) -> QaReport:
    """Gate a produced PDF against its source image.

    ``reference`` is the decoded source raster; it is decoded here if the
    caller did not already have it.

    Raises:
        JpegStreamMismatchError: passthrough JPEG bytes differ from the source.
        QaCheckFailedError: scores below the thresholds or wrong placement.
    """
    settings = settings or get_settings()
    extracted = extract_page_image(pdf_buffer)
    _check_placement(extracted, orientation, geometry)

    stream_match = None
    if passthrough:
        stream_match = extracted.filter == "/DCTDecode" and extracted.raw == source.data
        if stream_match:
            density = compute_qa_density(geometry, settings.qa_pixel_budget)
            logger.info(f"QA passed on stream identity ({len(extracted.raw)} bytes)")
            return QaReport(
                psnr=math.inf,
                ssim=1.0,
                jpeg_stream_match=True,
                method="stream",
                density_ppi=density,
                width_px=extracted.width,
                height_px=extracted.height,
                passed=True,
            )

    if reference is None:
        reference = decode_pixels(source)
    psnr, ssim, density, size = _raster_scores(extracted, reference, orientation, geometry, background, settings)
    passed = passes_thresholds(psnr, ssim, settings)
    ssim_text = f"{ssim:.5f}" if ssim is not None else "n/a"
    logger.info(f"QA raster @ {density:.2f}ppi {size[0]}x{size[1]}px: psnr={psnr:.2f} ssim={ssim_text}")

    if stream_match is False:
        logger.error(f"Embedded JPEG stream differs from source ({len(extracted.raw)} vs {len(source.data)} bytes)")
        raise JpegStreamMismatchError(
            "Embedded JPEG bytes differ from the source",
            psnr=psnr,
            ssim=ssim,
            embedded_bytes=len(extracted.raw),
            source_bytes=len(source.data),
        )
    if not passed:
        logger.error(f"QA failed: psnr={psnr:.2f} (min {settings.qa_min_psnr}) ssim={ssim_text} (min {settings.qa_min_ssim})")
        raise QaCheckFailedError(
            "Embedded image does not match the source closely enough",
            psnr=psnr,
            ssim=ssim,
            min_psnr=settings.qa_min_psnr,
            min_ssim=settings.qa_min_ssim,
        )

    return QaReport(
        psnr=psnr,
        ssim=ssim,
        jpeg_stream_match=stream_match,
        method="raster",
        density_ppi=density,
        width_px=extracted.width,
        height_px=extracted.height,
        passed=True,
    )
