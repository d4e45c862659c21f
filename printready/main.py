from fastapi import FastAPI, UploadFile, File, Form, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, JSONResponse
from pydantic import BaseModel
from typing import Optional
import json
import logging
import os

from .compositor import CompositionSpec, compose
from .config import get_settings, load_environment
from .embedder import embed_image_to_pdf
from .errors import PrintPipelineError
from .orchestrator import generate_print_pdf
from .utils import json_safe
from .validator import validate_print_pdf

# Discover .env before logging so LOG_LEVEL can come from it
_resolved_env = load_environment()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("printready")
logger.info(f"dotenv loaded from: {_resolved_env or 'not found'}")


class GeneratePrintPdfRequest(BaseModel):
    width_cm: float
    height_cm: float
    margin_cm: float = 0
    original_object_key: Optional[str] = None
    original_bucket: Optional[str] = None
    original_url: Optional[str] = None
    background: Optional[str] = None
    rid: Optional[str] = None
    diag_id: Optional[str] = None


app = FastAPI(title="Print Ready PDF API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

prefix = "/api"

_STATUS_BY_CODE = {
    "image_too_large": 413,
    "pdf_too_large": 413,
    "original_not_found": 404,
    "jpeg_stream_mismatch": 422,
    "qa_check_failed": 422,
    "invalid_bbox": 422,
}


@app.exception_handler(PrintPipelineError)
async def print_pipeline_error_handler(request, exc: PrintPipelineError):
    status = _STATUS_BY_CODE.get(exc.code, 400)
    logger.error(f"{request.url.path} failed with {exc.code} ({status}): {exc}")
    return JSONResponse(status_code=status, content=exc.to_dict())


def _debug_header(payload: dict) -> str:
    return json.dumps(json_safe(payload))


def _require_image(file: UploadFile):
    if file.content_type and not file.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Unsupported file type; expected an image")


@app.get(f"{prefix}/health")
def health_check():
    return {"status": "healthy"}


@app.post(f"{prefix}/image_to_print_pdf")
async def image_to_print_pdf_endpoint(
    file: UploadFile = File(...),
    width_cm: Optional[float] = Form(None),
    height_cm: Optional[float] = Form(None),
    bleed_cm: float = Form(0),
    target_ppi: Optional[float] = Form(None),
    background: Optional[str] = Form(None),
    enforce_srgb: bool = Form(True),
    upscale: bool = Form(False),
    allow_lossy: bool = Form(False),
    title: Optional[str] = Form(None),
    creator: Optional[str] = Form(None),
    diag_id: Optional[str] = Form(None),
):
    """
    Embed an uploaded image into a single page print PDF.

    The page is the requested physical size (or the pixel size at
    ``target_ppi``) plus ``bleed_cm`` on every side. The response is the
    PDF; dimensions, ICC source and QA scores are in the X-Debug-Info header.
    """
    _require_image(file)
    raw = await file.read()
    logger.info(f"image_to_print_pdf: {file.filename} ({len(raw)} bytes), {width_cm}x{height_cm}cm bleed={bleed_cm}cm")

    result = await run_in_threadpool(
        embed_image_to_pdf,
        raw,
        background=background,
        bleed_cm=bleed_cm,
        width_cm=width_cm,
        height_cm=height_cm,
        target_ppi=target_ppi,
        enforce_srgb=enforce_srgb,
        upscale=upscale,
        allow_lossy=allow_lossy,
        title=title,
        creator=creator,
        diag_id=diag_id,
        settings=get_settings(),
    )

    debug_info = {
        "width_px": result.width_px,
        "height_px": result.height_px,
        "width_cm": result.width_cm,
        "height_cm": result.height_cm,
        "page_width_pt": round(result.page_width_pt, 3),
        "page_height_pt": round(result.page_height_pt, 3),
        "bleed_cm": result.bleed_cm,
        "embedded_format": result.embedded_format,
        "recompression": result.recompression,
        "diagnostics": result.diagnostics.to_dict(),
    }
    return Response(
        content=result.pdf_buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": 'attachment; filename="print_ready.pdf"',
            "X-Debug-Info": _debug_header(debug_info),
        },
    )


@app.post(f"{prefix}/generate_print_pdf")
async def generate_print_pdf_endpoint(payload: GeneratePrintPdfRequest):
    """Fetch the original by key or URL and return the print PDF."""
    result = await run_in_threadpool(
        generate_print_pdf,
        payload.width_cm,
        payload.height_cm,
        payload.margin_cm,
        original_object_key=payload.original_object_key,
        original_bucket=payload.original_bucket,
        original_url=payload.original_url,
        background=payload.background,
        rid=payload.rid,
        diag_id=payload.diag_id,
        settings=get_settings(),
    )
    return Response(
        content=result.buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": 'attachment; filename="print.pdf"',
            "X-Debug-Info": _debug_header(result.info),
        },
    )


@app.post(f"{prefix}/validate_pdf")
async def validate_pdf_endpoint(
    file: UploadFile = File(...),
    expected_page_width_cm: Optional[float] = Form(None),
    expected_page_height_cm: Optional[float] = Form(None),
    expected_area_width_cm: Optional[float] = Form(None),
    expected_area_height_cm: Optional[float] = Form(None),
    margin_cm: float = Form(0),
    tolerance_mm: Optional[float] = Form(None),
):
    """Check a PDF's first page size against expected page and area sizes."""
    raw = await file.read()
    if tolerance_mm is None:
        tolerance_mm = get_settings().validate_tolerance_mm

    report = await run_in_threadpool(
        validate_print_pdf,
        raw,
        expected_page_width_cm,
        expected_page_height_cm,
        expected_area_width_cm,
        expected_area_height_cm,
        margin_cm,
        tolerance_mm,
    )
    return JSONResponse(content=json_safe(report.to_dict()))


@app.post(f"{prefix}/compose")
async def compose_endpoint(
    file: UploadFile = File(...),
    spec: str = Form(...),
    output: str = Form("print"),
):
    """
    Render an editor placement at print resolution.

    ``spec`` is a JSON object (canvas_px, pad_px, place_px, width_cm,
    height_cm, bleed_mm, rotate_deg, fit_mode, background_hex).
    ``output`` picks the bleed-inclusive ``print`` raster or the ``inner`` one.
    """
    _require_image(file)
    if output not in ("print", "inner"):
        raise HTTPException(status_code=400, detail="output must be print or inner")
    try:
        composition = CompositionSpec.from_dict(json.loads(spec))
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Invalid compose spec: {e}")
        raise HTTPException(400, f"Invalid compose spec: {e}")

    raw = await file.read()
    result = await run_in_threadpool(compose, composition, raw, get_settings())

    content = result.print_buffer if output == "print" else result.inner_buffer
    extension = "png" if result.format == "png" else "jpg"
    return Response(
        content=content,
        media_type=result.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{output}.{extension}"',
            "X-Debug-Info": _debug_header(result.debug),
        },
    )
