"""Environment-driven settings for the print pipeline."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    max_pixels: int = Field(default=120_000_000, gt=0)
    max_pdf_bytes: int = Field(default=250 * 1024 * 1024, gt=0)
    default_ppi: float = Field(default=72.0, gt=0)
    qa_min_psnr: float = 45.0
    qa_min_ssim: float = 0.99
    qa_pixel_budget: int = Field(default=2_000_000, gt=0)
    lossy_jpeg_quality: int = Field(default=95, ge=1, le=100)
    compose_dpi: int = Field(default=300, gt=0)
    compose_jpeg_quality: int = Field(default=92, ge=1, le=100)
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)
    storage_base_url: Optional[str] = None
    uploads_bucket: str = "uploads"
    srgb_icc_path: Optional[str] = None
    validate_tolerance_mm: float = Field(default=1.0, ge=0)
    log_level: str = "INFO"


_ENV_FIELDS = {
    "max_pixels": "PRINT_MAX_PIXELS",
    "max_pdf_bytes": "PRINT_MAX_PDF_BYTES",
    "default_ppi": "PRINT_DEFAULT_PPI",
    "qa_min_psnr": "PRINT_QA_MIN_PSNR",
    "qa_min_ssim": "PRINT_QA_MIN_SSIM",
    "qa_pixel_budget": "PRINT_QA_PIXEL_BUDGET",
    "lossy_jpeg_quality": "PRINT_LOSSY_JPEG_QUALITY",
    "compose_dpi": "PRINT_COMPOSE_DPI",
    "compose_jpeg_quality": "PRINT_COMPOSE_JPEG_QUALITY",
    "fetch_timeout_seconds": "PRINT_FETCH_TIMEOUT",
    "storage_base_url": "PRINT_STORAGE_BASE_URL",
    "uploads_bucket": "PRINT_UPLOADS_BUCKET",
    "srgb_icc_path": "PRINT_SRGB_ICC_PATH",
    "validate_tolerance_mm": "PRINT_VALIDATE_TOLERANCE_MM",
    "log_level": "LOG_LEVEL",
}


def load_environment() -> Optional[str]:
    """Discover and load .env.local (or a .env next to the package)."""
    resolved = find_dotenv(".env.local")
    if not resolved:
        fallback = Path(__file__).resolve().parent / ".env"
        if fallback.exists():
            resolved = str(fallback)

    if resolved:
        # utf-8-sig tolerates a BOM in files saved on Windows
        load_dotenv(resolved, override=False, encoding="utf-8-sig")
    return resolved or None


def settings_from_env() -> Settings:
    values = {}
    for field, env_name in _ENV_FIELDS.items():
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        values[field] = raw.strip()
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    resolved = load_environment()
    logger.info(f"dotenv loaded from: {resolved or 'not found'}")
    return settings_from_env()
