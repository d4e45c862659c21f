"""Shared fixtures: synthetic images and explicit settings.

Images are generated in memory so the suite needs no binary fixtures.
"""
from __future__ import annotations

import sys
from io import BytesIO
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from printready.config import Settings  # noqa: E402


def make_gradient(width: int, height: int) -> Image.Image:
    """RGB image with a horizontal red ramp and a vertical green ramp."""
    red = np.tile(np.linspace(0, 255, width), (height, 1))
    green = np.tile(np.linspace(0, 255, height)[:, None], (1, width))
    blue = (red + green) / 2
    return Image.fromarray(np.dstack([red, green, blue]).astype(np.uint8))


def encode(image: Image.Image, fmt: str, **params) -> bytes:
    buf = BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


@pytest.fixture
def settings():
    return Settings(qa_pixel_budget=250_000)


@pytest.fixture
def gradient_png():
    def factory(width: int = 180, height: int = 120) -> bytes:
        return encode(make_gradient(width, height), "PNG")
    return factory


@pytest.fixture
def gradient_jpeg():
    def factory(width: int = 180, height: int = 120, orientation: int = None, mode: str = "RGB") -> bytes:
        image = make_gradient(width, height)
        if mode != "RGB":
            image = image.convert(mode)
        params = {"quality": 95, "subsampling": 0}
        if orientation is not None:
            exif = Image.Exif()
            exif[0x0112] = orientation
            params["exif"] = exif.tobytes()
        if mode == "L":
            params.pop("subsampling")
        return encode(image, "JPEG", **params)
    return factory


@pytest.fixture
def rgba_png():
    def factory(width: int = 120, height: int = 90) -> bytes:
        image = make_gradient(width, height).convert("RGBA")
        alpha = np.tile(np.linspace(0, 255, width), (height, 1)).astype(np.uint8)
        image.putalpha(Image.fromarray(alpha))
        return encode(image, "PNG")
    return factory
