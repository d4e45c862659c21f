"""Page geometry check for produced PDFs, independent of the producer library."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from io import BytesIO
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .errors import PdfPageMissingError, PdfParseFailedError
from .utils import points_to_cm

logger = logging.getLogger(__name__)

_EPSILON_MM = 1e-6


@dataclass(frozen=True)
class ValidationReport:
    ok: bool
    tolerance_mm: float
    expected: dict
    measured: dict
    deltas_mm: dict
    user_unit: float

    def to_dict(self) -> dict:
        return asdict(self)


def _delta_mm(measured: float, expected: Optional[float]) -> Optional[float]:
    if expected is None or expected <= 0:
        return None
    return abs(measured - expected) * 10


def validate_print_pdf(
    buffer: bytes,
    expected_page_width_cm: Optional[float] = None,
    expected_page_height_cm: Optional[float] = None,
    expected_area_width_cm: Optional[float] = None,
    expected_area_height_cm: Optional[float] = None,
    margin_cm: float = 0,
    tolerance_mm: float = 1,
) -> ValidationReport:
    """Compare the first page's MediaBox (× UserUnit) against expectations.

    The printable area is the page minus ``margin_cm`` on each side.
    Expectations that are missing or non-positive are not checked.
    """
    if not buffer:
        raise PdfParseFailedError("PDF buffer is empty")
    try:
        reader = PdfReader(BytesIO(bytes(buffer)))
        pages = reader.pages
        page_count = len(pages)
    except (PyPdfError, ValueError, KeyError, TypeError, AttributeError, IndexError) as exc:
        logger.error(f"Unable to parse PDF: {exc}")
        raise PdfParseFailedError(f"Unable to parse PDF: {exc}") from exc
    if page_count == 0:
        raise PdfPageMissingError("PDF has no pages")

    page = pages[0]
    user_unit = float(page.user_unit or 1)
    margin_cm = float(margin_cm or 0)
    page_w_cm = points_to_cm(float(page.mediabox.width) * user_unit)
    page_h_cm = points_to_cm(float(page.mediabox.height) * user_unit)
    measured = {
        "page_width_cm": page_w_cm,
        "page_height_cm": page_h_cm,
        "area_width_cm": page_w_cm - 2 * margin_cm,
        "area_height_cm": page_h_cm - 2 * margin_cm,
    }
    expected = {
        "page_width_cm": expected_page_width_cm,
        "page_height_cm": expected_page_height_cm,
        "area_width_cm": expected_area_width_cm,
        "area_height_cm": expected_area_height_cm,
        "margin_cm": margin_cm,
    }
    deltas = {
        "page_width": _delta_mm(measured["page_width_cm"], expected_page_width_cm),
        "page_height": _delta_mm(measured["page_height_cm"], expected_page_height_cm),
        "area_width": _delta_mm(measured["area_width_cm"], expected_area_width_cm),
        "area_height": _delta_mm(measured["area_height_cm"], expected_area_height_cm),
    }
    ok = all(delta <= tolerance_mm + _EPSILON_MM for delta in deltas.values() if delta is not None)

    log = logger.info if ok else logger.warning
    log(
        f"PDF geometry {'ok' if ok else 'mismatch'}: page {page_w_cm:.3f}x{page_h_cm:.3f}cm "
        f"(UserUnit {user_unit:g}), deltas_mm={deltas}"
    )
    return ValidationReport(
        ok=ok,
        tolerance_mm=tolerance_mm,
        expected=expected,
        measured=measured,
        deltas_mm=deltas,
        user_unit=user_unit,
    )
