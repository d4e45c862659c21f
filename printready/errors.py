"""Typed failures raised by the print pipeline.

Every error carries a stable ``code`` string that callers (HTTP handlers,
job runners) can branch on, plus free-form ``details`` for diagnostics.
None of these are retried internally.
"""
from __future__ import annotations

from typing import Any, Optional

from .utils import json_safe


class PrintPipelineError(Exception):
    code = "print_pipeline_error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, **details: Any) -> None:
        if code:
            self.code = code
        self.details = {key: value for key, value in details.items() if value is not None}
        super().__init__(message or self.code)

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": str(self)}
        payload.update(json_safe(self.details))
        return payload


class InvalidImageBufferError(PrintPipelineError):
    code = "invalid_image_buffer"


class ImageMetadataUnavailableError(PrintPipelineError):
    code = "image_metadata_unavailable"


class ImageTooLargeError(PrintPipelineError):
    code = "image_too_large"


class InvalidDimensionError(PrintPipelineError):
    """Non-positive or inconsistent physical dimensions.

    ``kind`` is always ``invalid_dimension``; ``code`` names the offending
    field (``invalid_width_cm``, ``invalid_height_cm``, ...).
    """

    code = "invalid_dimension"
    kind = "invalid_dimension"


class PdfTooLargeError(PrintPipelineError):
    code = "pdf_too_large"


class JpegStreamMismatchError(PrintPipelineError):
    code = "jpeg_stream_mismatch"


class QaCheckFailedError(PrintPipelineError):
    code = "qa_check_failed"

    def __init__(self, message: Optional[str] = None, *, psnr: Optional[float] = None,
                 ssim: Optional[float] = None, **details: Any) -> None:
        self.psnr = psnr
        self.ssim = ssim
        super().__init__(message, psnr=psnr, ssim=ssim, **details)


class InvalidBBoxError(PrintPipelineError):
    code = "invalid_bbox"

    def __init__(self, message: Optional[str] = None, *, debug: Optional[dict] = None, **details: Any) -> None:
        self.debug = dict(debug or {})
        super().__init__(message, debug=self.debug, **details)


class PdfParseFailedError(PrintPipelineError):
    code = "pdf_parse_failed"


class PdfPageMissingError(PrintPipelineError):
    code = "pdf_page_missing"


class OriginalNotFoundError(PrintPipelineError):
    code = "original_not_found"
