"""Image → print-ready single page PDF.

JPEGs without alpha (gray, RGB or CMYK) are embedded byte-for-byte. Everything
else is decoded and written as a lossless Flate raster with any alpha split
into a soft mask. Every PDF is read back and QA-gated before it is returned.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, replace
from io import BytesIO
from typing import Optional, Union

import fitz
import numpy as np
from PIL import Image

from .color_profile import (
    ColorProfile,
    device_color_space,
    resolve_color_profile,
    write_icc_stream,
    write_output_intent,
)
from .config import Settings, get_settings
from .errors import PdfTooLargeError
from .geometry import (
    OrientationInfo,
    PageGeometry,
    PhysicalSpec,
    placement_matrix,
    resolve_orientation,
    resolve_page_geometry,
)
from .metadata_reader import HIGH_BIT_MODES, SourceImage, decode_pixels, read_source_image
from .qa import QaReport, verify_embedded_pdf
from .utils import format_pdf_number, hex_to_rgb, normalize_background, upscale_with_LANCZOS

logger = logging.getLogger(__name__)

IMAGE_RESOURCE_NAME = "Im0"

_PASSTHROUGH_MODES = ("RGB", "L", "CMYK")
_INVERTED_CMYK_DECODE = "[1 0 1 0 1 0 1 0]"
_COMPONENTS_BY_MODE = {"L": 1, "RGB": 3, "CMYK": 4}


@dataclass(frozen=True)
class EmbeddedJpeg:
    data: bytes
    width: int
    height: int
    components: int
    passthrough: bool
    alpha: Optional[bytes] = None
    inverted_cmyk: bool = False
    format: str = "jpeg"


@dataclass(frozen=True)
class EmbeddedPng:
    data: bytes
    width: int
    height: int
    components: int
    alpha: Optional[bytes] = None
    format: str = "png"


Embeddable = Union[EmbeddedJpeg, EmbeddedPng]


@dataclass(frozen=True)
class Diagnostics:
    diag_id: Optional[str]
    orientation: dict
    source_format: str
    source_mime: Optional[str]
    source_dpi: Optional[tuple[float, float]]
    embedded_format: str
    icc_source: Optional[str]
    icc_name: Optional[str]
    recompressed: bool
    upscaled: bool
    lossy: bool
    qa: QaReport
    target_ppi: Optional[float]
    actual_ppi: float
    user_unit: int
    source_bytes: int
    pdf_bytes: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class EmbeddedDocument:
    pdf_buffer: bytes
    width_px: int
    height_px: int
    width_cm: float
    height_cm: float
    page_width_pt: float
    page_height_pt: float
    bleed_cm: float
    embedded_format: str
    icc_profile: Optional[ColorProfile]
    recompression: bool
    qa: QaReport
    target_ppi: Optional[float]
    diagnostics: Diagnostics
    geometry: PageGeometry
    orientation: OrientationInfo


def _reduce_bit_depth(image: Image.Image) -> Image.Image:
    """16-bit and float gray to 8-bit L, keeping the top byte of each sample."""
    samples = np.asarray(image)
    if image.mode == "F":
        if samples.size and samples.max() <= 1.0:
            samples = samples * 255.0
        reduced = np.clip(np.rint(samples), 0, 255)
    else:
        reduced = np.clip(samples.astype(np.int64), 0, 65535) >> 8
    return Image.fromarray(reduced.astype(np.uint8))


def _split_alpha(image: Image.Image) -> tuple[Image.Image, Optional[Image.Image]]:
    """Reduce any decoded mode to L, RGB or CMYK plus an optional alpha plane."""
    if image.mode in HIGH_BIT_MODES:
        image = _reduce_bit_depth(image)
    elif image.mode == "P":
        image = image.convert("RGBA" if "transparency" in image.info else "RGB")
    elif image.mode in ("RGBa", "PA"):
        image = image.convert("RGBA")
    elif image.mode == "La":
        image = image.convert("LA")
    elif image.mode in ("L", "RGB") and "transparency" in image.info:
        image = image.convert("RGBA")

    if image.mode == "RGBA":
        return image.convert("RGB"), image.getchannel("A")
    if image.mode == "LA":
        return image.convert("L"), image.getchannel("A")
    if image.mode in _COMPONENTS_BY_MODE:
        return image, None
    return image.convert("RGB"), None


def _upscaled_size(width: int, height: int, factor: float, max_pixels: int) -> tuple[int, int]:
    if width * height * factor * factor > max_pixels:
        factor = math.sqrt(max_pixels / (width * height))
        return max(width, math.floor(width * factor)), max(height, math.floor(height * factor))
    return max(width, round(width * factor)), max(height, round(height * factor))


def normalize_raster(
    image: Image.Image,
    upscale_to: Optional[tuple[int, int]] = None,
    lossy_quality: Optional[int] = None,
) -> Embeddable:
    """Turn decoded pixels into an embeddable: raw rows, or JPEG when lossy."""
    color, alpha = _split_alpha(image)
    if upscale_to is not None:
        color = upscale_with_LANCZOS(color, upscale_to)
        if alpha is not None:
            alpha = upscale_with_LANCZOS(alpha, upscale_to)
    alpha_bytes = alpha.tobytes() if alpha is not None and alpha.getextrema() != (255, 255) else None
    components = _COMPONENTS_BY_MODE[color.mode]

    if lossy_quality is not None:
        with BytesIO() as buf:
            color.save(buf, format="JPEG", quality=lossy_quality, subsampling=0, optimize=False)
            data = buf.getvalue()
        return EmbeddedJpeg(
            data=data,
            width=color.width,
            height=color.height,
            components=components,
            passthrough=False,
            alpha=alpha_bytes,
            # Pillow writes CMYK JPEGs Adobe-style, inverted
            inverted_cmyk=components == 4,
        )

    return EmbeddedPng(
        data=color.tobytes(),
        width=color.width,
        height=color.height,
        components=components,
        alpha=alpha_bytes,
    )


def _write_image_xobject(doc: fitz.Document, embeddable: Embeddable, profile: Optional[ColorProfile]) -> int:
    if profile is not None:
        icc_xref = write_icc_stream(doc, profile)
        write_output_intent(doc, profile, icc_xref)
        colorspace = f"[/ICCBased {icc_xref} 0 R]"
    else:
        colorspace = device_color_space(embeddable.components)

    smask = ""
    if embeddable.alpha is not None:
        smask_xref = doc.get_new_xref()
        doc.update_object(
            smask_xref,
            f"<< /Type /XObject /Subtype /Image /Width {embeddable.width} /Height {embeddable.height} "
            f"/ColorSpace /DeviceGray /BitsPerComponent 8 >>",
        )
        doc.update_stream(smask_xref, embeddable.alpha, compress=1)
        smask = f" /SMask {smask_xref} 0 R"

    decode = ""
    if isinstance(embeddable, EmbeddedJpeg) and embeddable.inverted_cmyk:
        decode = f" /Decode {_INVERTED_CMYK_DECODE}"

    image_xref = doc.get_new_xref()
    doc.update_object(
        image_xref,
        f"<< /Type /XObject /Subtype /Image /Width {embeddable.width} /Height {embeddable.height} "
        f"/ColorSpace {colorspace} /BitsPerComponent 8{decode}{smask} >>",
    )
    if isinstance(embeddable, EmbeddedJpeg):
        # an uncompressed update drops /Filter, so the DCT filter goes on afterwards
        doc.update_stream(image_xref, embeddable.data, compress=0)
        doc.xref_set_key(image_xref, "Filter", "/DCTDecode")
    else:
        doc.update_stream(image_xref, embeddable.data, compress=1)
    return image_xref


def build_pdf(
    embeddable: Embeddable,
    geometry: PageGeometry,
    orientation: OrientationInfo,
    background: str,
    profile: Optional[ColorProfile],
    title: Optional[str] = None,
    creator: Optional[str] = None,
) -> bytes:
    """Serialize one page: background fill, then the oriented image."""
    page_w = geometry.scaled(geometry.page_width_pt)
    page_h = geometry.scaled(geometry.page_height_pt)
    bleed = geometry.scaled(geometry.bleed_pt)
    image_w = geometry.scaled(geometry.image_width_pt)
    image_h = geometry.scaled(geometry.image_height_pt)

    doc = fitz.open()
    try:
        page = doc.new_page(width=page_w, height=page_h)
        page_xref = page.xref
        num = format_pdf_number

        if geometry.user_unit != 1:
            doc.xref_set_key(page_xref, "UserUnit", str(geometry.user_unit))
        doc.xref_set_key(page_xref, "BleedBox", f"[0 0 {num(page_w)} {num(page_h)}]")
        doc.xref_set_key(
            page_xref,
            "TrimBox",
            f"[{num(bleed)} {num(bleed)} {num(bleed + image_w)} {num(bleed + image_h)}]",
        )

        image_xref = _write_image_xobject(doc, embeddable, profile)
        doc.xref_set_key(page_xref, "Resources", f"<< /XObject << /{IMAGE_RESOURCE_NAME} {image_xref} 0 R >> >>")

        r, g, b = (channel / 255 for channel in hex_to_rgb(background))
        matrix = placement_matrix(orientation.code, bleed, bleed, image_w, image_h)
        content = (
            "q\n"
            f"{num(r)} {num(g)} {num(b)} rg\n"
            f"0 0 {num(page_w)} {num(page_h)} re\n"
            "f\n"
            "Q\n"
            "q\n"
            f"{' '.join(num(value) for value in matrix)} cm\n"
            f"/{IMAGE_RESOURCE_NAME} Do\n"
            "Q\n"
        ).encode("ascii")

        stream_xref = doc.get_new_xref()
        doc.update_object(stream_xref, "<<>>")
        doc.update_stream(stream_xref, content)
        doc.xref_set_key(page_xref, "Contents", f"{stream_xref} 0 R")

        if title or creator:
            doc.set_metadata({"title": title or "", "creator": creator or ""})

        return doc.tobytes(garbage=1, no_new_id=True, use_objstms=0)
    finally:
        doc.close()


def embed_image_to_pdf(
    buffer: bytes,
    *,
    background: Optional[str] = None,
    bleed_cm: float = 0,
    width_cm: Optional[float] = None,
    height_cm: Optional[float] = None,
    target_ppi: Optional[float] = None,
    enforce_srgb: bool = True,
    upscale: bool = False,
    max_pixels: Optional[int] = None,
    allow_lossy: bool = False,
    title: Optional[str] = None,
    creator: Optional[str] = None,
    diag_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> EmbeddedDocument:
    """Embed ``buffer`` into a single page, bleed-extended, QA-verified PDF.

    Without ``width_cm``/``height_cm`` the page is sized from the pixel
    dimensions at ``target_ppi`` (or the configured default density).
    """
    settings = settings or get_settings()
    max_pixels = max_pixels or settings.max_pixels
    tag = f"[{diag_id}] " if diag_id else ""
    background = normalize_background(background)

    source = read_source_image(buffer, max_pixels)
    spec = PhysicalSpec(width_cm=width_cm, height_cm=height_cm, bleed_cm=bleed_cm, target_ppi=target_ppi)
    orientation = resolve_orientation(source.orientation, source.width, source.height)
    geometry = resolve_page_geometry(spec, orientation, settings.default_ppi)
    logger.info(
        f"{tag}Page {geometry.page_width_pt:.2f}x{geometry.page_height_pt:.2f}pt, "
        f"image {geometry.image_width_pt:.2f}x{geometry.image_height_pt:.2f}pt, "
        f"bleed {geometry.bleed_pt:.2f}pt, orientation {orientation.name}, {geometry.density_ppi:.2f}ppi"
    )

    upscale_to = None
    if upscale and target_ppi and target_ppi > geometry.density_ppi:
        upscale_to = _upscaled_size(source.width, source.height, target_ppi / geometry.density_ppi, max_pixels)
        if upscale_to == (source.width, source.height):
            upscale_to = None
        else:
            factor = upscale_to[0] / source.width
            geometry = replace(geometry, density_ppi=geometry.density_ppi * factor)
            logger.info(f"{tag}Upscaling {source.width}x{source.height} -> {upscale_to[0]}x{upscale_to[1]} (LANCZOS)")

    decoded = None
    if source.format == "jpeg" and source.mode in _PASSTHROUGH_MODES and not source.has_alpha and upscale_to is None:
        embeddable = EmbeddedJpeg(
            data=source.data,
            width=source.width,
            height=source.height,
            components=_COMPONENTS_BY_MODE[source.mode],
            passthrough=True,
            inverted_cmyk=source.inverted_cmyk,
        )
    else:
        decoded = decode_pixels(source)
        embeddable = normalize_raster(decoded, upscale_to=upscale_to)

    profile = resolve_color_profile(source.icc_profile, embeddable.components, enforce_srgb, settings)

    def _build(item: Embeddable) -> bytes:
        return build_pdf(item, geometry, orientation, background, profile, title=title, creator=creator)

    pdf = _build(embeddable)
    lossy = False
    if len(pdf) > settings.max_pdf_bytes:
        if not allow_lossy:
            logger.error(f"{tag}PDF is {len(pdf)} bytes, limit is {settings.max_pdf_bytes}")
            raise PdfTooLargeError(
                f"PDF is {len(pdf)} bytes, limit is {settings.max_pdf_bytes}",
                pdf_bytes=len(pdf),
                max_pdf_bytes=settings.max_pdf_bytes,
            )
        logger.warning(
            f"{tag}PDF is {len(pdf)} bytes, re-encoding as JPEG q{settings.lossy_jpeg_quality} to fit"
        )
        if decoded is None:
            decoded = decode_pixels(source)
        embeddable = normalize_raster(decoded, upscale_to=upscale_to, lossy_quality=settings.lossy_jpeg_quality)
        pdf = _build(embeddable)
        lossy = True
        if len(pdf) > settings.max_pdf_bytes:
            logger.error(f"{tag}Lossy PDF is still {len(pdf)} bytes, limit is {settings.max_pdf_bytes}")
            raise PdfTooLargeError(
                f"PDF is {len(pdf)} bytes after lossy re-encode, limit is {settings.max_pdf_bytes}",
                pdf_bytes=len(pdf),
                max_pdf_bytes=settings.max_pdf_bytes,
                lossy=True,
            )

    passthrough = isinstance(embeddable, EmbeddedJpeg) and embeddable.passthrough
    qa = verify_embedded_pdf(
        pdf,
        source=source,
        orientation=orientation,
        geometry=geometry,
        background=background,
        reference=decoded,
        passthrough=passthrough,
        settings=settings,
    )

    diagnostics = Diagnostics(
        diag_id=diag_id,
        orientation={"code": orientation.code, "name": orientation.name},
        source_format=source.format,
        source_mime=source.mime,
        source_dpi=source.dpi,
        embedded_format=embeddable.format,
        icc_source=profile.source if profile else None,
        icc_name=profile.name if profile else None,
        recompressed=not passthrough,
        upscaled=upscale_to is not None,
        lossy=lossy,
        qa=qa,
        target_ppi=target_ppi,
        actual_ppi=geometry.density_ppi,
        user_unit=geometry.user_unit,
        source_bytes=len(source.data),
        pdf_bytes=len(pdf),
    )
    logger.info(
        f"{tag}Embedded {embeddable.format} {embeddable.width}x{embeddable.height}px "
        f"(passthrough={passthrough}, icc={diagnostics.icc_source}) -> {len(pdf)} bytes, qa={qa.method}"
    )

    return EmbeddedDocument(
        pdf_buffer=pdf,
        width_px=embeddable.width,
        height_px=embeddable.height,
        width_cm=width_cm if width_cm is not None else geometry.image_width_cm,
        height_cm=height_cm if height_cm is not None else geometry.image_height_cm,
        page_width_pt=geometry.page_width_pt,
        page_height_pt=geometry.page_height_pt,
        bleed_cm=bleed_cm,
        embedded_format=embeddable.format,
        icc_profile=profile,
        recompression=not passthrough,
        qa=qa,
        target_ppi=target_ppi,
        diagnostics=diagnostics,
        geometry=geometry,
        orientation=orientation,
    )
