"""Tests for embed_image_to_pdf."""
import math

import fitz
import numpy as np
import pytest
from PIL import Image

from printready.config import Settings
from printready.embedder import embed_image_to_pdf
from printready.errors import (
    ImageMetadataUnavailableError,
    ImageTooLargeError,
    InvalidDimensionError,
    InvalidImageBufferError,
    PdfTooLargeError,
    QaCheckFailedError,
)
from printready.metadata_reader import decode_pixels, read_source_image, to_rgb_reference
from printready.qa import extract_page_image
from printready.utils import cm_to_points
from printready.validator import validate_print_pdf

from conftest import encode, make_gradient


def _open(pdf_buffer):
    return fitz.open(stream=pdf_buffer, filetype="pdf")


class TestPngEmbedding:
    """Lossless raster path."""

    def test_poster_scenario(self, gradient_png, settings):
        result = embed_image_to_pdf(
            gradient_png(1800, 1200), width_cm=90, height_cm=60, bleed_cm=1, settings=settings
        )
        assert result.width_cm == 90
        assert result.height_cm == 60
        assert result.page_width_pt == pytest.approx(92 / 2.54 * 72)
        assert result.page_height_pt == pytest.approx(62 / 2.54 * 72)
        assert result.width_px == 1800
        assert result.height_px == 1200
        assert result.embedded_format == "png"
        assert result.recompression is True
        assert result.qa.method == "raster"
        assert result.qa.psnr == math.inf
        assert result.qa.passed is True

    def test_boxes_and_profile(self, gradient_png, settings):
        result = embed_image_to_pdf(gradient_png(), width_cm=15, height_cm=10, bleed_cm=0.5, settings=settings)
        bleed = cm_to_points(0.5)
        with _open(result.pdf_buffer) as doc:
            page = doc[0]
            assert page.rect.width == pytest.approx(result.page_width_pt, abs=0.01)
            assert page.bleedbox == page.mediabox
            assert page.trimbox.width == pytest.approx(cm_to_points(15), abs=0.01)
            assert page.trimbox.x0 == pytest.approx(bleed, abs=0.01)
            assert "OutputIntents" in doc.xref_object(doc.pdf_catalog())
        assert result.icc_profile.source == "srgb"
        assert result.diagnostics.icc_source == "srgb"

    def test_alpha_becomes_soft_mask(self, rgba_png, settings):
        result = embed_image_to_pdf(rgba_png(), bleed_cm=0.3, background="#0f0", settings=settings)
        with _open(result.pdf_buffer) as doc:
            images = doc[0].get_images(full=True)
            assert len(images) == 1
            assert images[0][1] > 0
        assert result.qa.psnr == math.inf

    def test_palette_image(self, settings):
        image = make_gradient(64, 48).quantize(colors=32)
        result = embed_image_to_pdf(encode(image, "PNG"), settings=settings)
        assert result.embedded_format == "png"
        assert result.qa.passed is True

    def test_pixel_mode_default_density(self, gradient_png, settings):
        result = embed_image_to_pdf(gradient_png(144, 72), settings=settings)
        assert result.page_width_pt == pytest.approx(144)
        assert result.page_height_pt == pytest.approx(72)


class TestJpegEmbedding:
    """Verbatim passthrough path."""

    def test_orientation_six_scenario(self, gradient_jpeg, settings):
        source = gradient_jpeg(1024, 1536, orientation=6)
        result = embed_image_to_pdf(source, bleed_cm=1, target_ppi=150, settings=settings)

        assert result.width_px == 1024
        assert result.height_px == 1536
        assert result.page_width_pt == pytest.approx(1536 / 150 * 72 + 2 * cm_to_points(1))
        assert result.page_height_pt == pytest.approx(1024 / 150 * 72 + 2 * cm_to_points(1))
        assert result.diagnostics.orientation == {"code": 6, "name": "rotate-90"}
        assert result.qa.jpeg_stream_match is True
        assert result.qa.method == "stream"
        assert result.recompression is False

    def test_stream_is_verbatim_and_validates(self, gradient_jpeg, settings):
        source = gradient_jpeg(300, 200)
        result = embed_image_to_pdf(source, width_cm=30, height_cm=20, bleed_cm=0.3, settings=settings)

        with _open(result.pdf_buffer) as doc:
            xref = doc[0].get_images(full=True)[0][0]
            assert doc.xref_stream_raw(xref) == source

        report = validate_print_pdf(
            result.pdf_buffer,
            expected_page_width_cm=30.6,
            expected_page_height_cm=20.6,
            expected_area_width_cm=30,
            expected_area_height_cm=20,
            margin_cm=0.3,
            tolerance_mm=1,
        )
        assert report.ok is True

    def test_grayscale_jpeg_uses_device_gray(self, gradient_jpeg, settings):
        result = embed_image_to_pdf(gradient_jpeg(120, 80, mode="L"), settings=settings)
        assert result.qa.jpeg_stream_match is True
        assert result.icc_profile is None
        with _open(result.pdf_buffer) as doc:
            xref = doc[0].get_images(full=True)[0][0]
            assert doc.xref_get_key(xref, "ColorSpace")[1] == "/DeviceGray"

    def test_cmyk_jpeg_passes_through_with_inverted_decode(self, gradient_jpeg, settings):
        source = gradient_jpeg(120, 80, mode="CMYK")
        result = embed_image_to_pdf(source, settings=settings)
        assert result.embedded_format == "jpeg"
        assert result.recompression is False
        assert result.icc_profile is None
        assert result.qa.method == "stream"
        assert result.qa.jpeg_stream_match is True
        with _open(result.pdf_buffer) as doc:
            xref = doc[0].get_images(full=True)[0][0]
            assert doc.xref_stream_raw(xref) == source
            assert doc.xref_get_key(xref, "ColorSpace")[1] == "/DeviceCMYK"
            # Pillow writes Adobe APP14 CMYK, stored inverted
            assert doc.xref_get_key(xref, "Decode")[1] == "[1 0 1 0 1 0 1 0]"

    def test_rgb_jpeg_has_no_decode_array(self, gradient_jpeg, settings):
        result = embed_image_to_pdf(gradient_jpeg(), settings=settings)
        with _open(result.pdf_buffer) as doc:
            xref = doc[0].get_images(full=True)[0][0]
            assert doc.xref_get_key(xref, "Decode")[0] == "null"

    def test_metadata_only_title_and_creator(self, gradient_jpeg, settings):
        result = embed_image_to_pdf(gradient_jpeg(), title="Poster 90x60", creator="printready", settings=settings)
        with _open(result.pdf_buffer) as doc:
            assert doc.metadata["title"] == "Poster 90x60"
            assert doc.metadata["creator"] == "printready"
            assert not doc.metadata["creationDate"]
            assert not doc.metadata["producer"]


class TestDeterminism:
    """Identical inputs give identical bytes."""

    def test_png_idempotent(self, gradient_png, settings):
        source = gradient_png()
        first = embed_image_to_pdf(source, width_cm=10, height_cm=5, bleed_cm=0.3, settings=settings)
        second = embed_image_to_pdf(source, width_cm=10, height_cm=5, bleed_cm=0.3, settings=settings)
        assert first.pdf_buffer == second.pdf_buffer

    def test_jpeg_idempotent(self, gradient_jpeg, settings):
        source = gradient_jpeg(orientation=3)
        first = embed_image_to_pdf(source, bleed_cm=1, title="t", settings=settings)
        second = embed_image_to_pdf(source, bleed_cm=1, title="t", settings=settings)
        assert first.pdf_buffer == second.pdf_buffer


class TestLimits:
    """Input and output ceilings."""

    def test_image_too_large(self, gradient_png, settings):
        with pytest.raises(ImageTooLargeError) as excinfo:
            embed_image_to_pdf(gradient_png(200, 100), max_pixels=200 * 100 - 1, settings=settings)
        assert excinfo.value.details["max_pixels"] == 200 * 100 - 1

    def test_exactly_at_ceiling_is_allowed(self, gradient_png, settings):
        result = embed_image_to_pdf(gradient_png(200, 100), max_pixels=200 * 100, settings=settings)
        assert result.width_px == 200

    @pytest.mark.parametrize("buffer", [b"", None, "not bytes"])
    def test_invalid_buffer(self, buffer, settings):
        with pytest.raises(InvalidImageBufferError):
            embed_image_to_pdf(buffer, settings=settings)

    def test_unreadable_header(self, settings):
        with pytest.raises(ImageMetadataUnavailableError):
            embed_image_to_pdf(b"definitely not an image", settings=settings)

    def test_half_specified_size(self, gradient_png, settings):
        with pytest.raises(InvalidDimensionError):
            embed_image_to_pdf(gradient_png(), width_cm=10, settings=settings)

    def test_pdf_too_large(self, gradient_png):
        tight = Settings(qa_pixel_budget=250_000, max_pdf_bytes=100_000)
        with pytest.raises(PdfTooLargeError) as excinfo:
            embed_image_to_pdf(gradient_png(400, 300), settings=tight)
        assert excinfo.value.details["pdf_bytes"] > 100_000

    def test_lossy_override(self, gradient_png):
        tight = Settings(qa_pixel_budget=250_000, max_pdf_bytes=100_000, qa_min_psnr=35)
        result = embed_image_to_pdf(gradient_png(400, 300), allow_lossy=True, settings=tight)
        assert result.embedded_format == "jpeg"
        assert result.diagnostics.lossy is True
        assert len(result.pdf_buffer) <= 100_000
        assert result.qa.method == "raster"
        assert result.qa.ssim >= 0.99


class TestUpscale:
    """Optional LANCZOS upscaling toward the target density."""

    def test_upscales_to_target_ppi(self, gradient_png, settings):
        # 100 px over 2.54 cm is 100 ppi
        result = embed_image_to_pdf(
            gradient_png(100, 50), width_cm=2.54, height_cm=1.27, target_ppi=200, upscale=True, settings=settings
        )
        assert (result.width_px, result.height_px) == (200, 100)
        assert result.diagnostics.upscaled is True
        assert result.diagnostics.actual_ppi == pytest.approx(200)

    def test_no_upscale_without_flag(self, gradient_jpeg, settings):
        result = embed_image_to_pdf(
            gradient_jpeg(100, 50), width_cm=2.54, height_cm=1.27, target_ppi=200, settings=settings
        )
        assert result.width_px == 100
        assert result.qa.jpeg_stream_match is True

    def test_upscale_bounded_by_max_pixels(self, gradient_png, settings):
        result = embed_image_to_pdf(
            gradient_png(100, 50),
            width_cm=2.54,
            height_cm=1.27,
            target_ppi=1000,
            upscale=True,
            max_pixels=20_000,
            settings=settings,
        )
        assert result.width_px * result.height_px <= 20_000
        assert result.width_px > 100


class TestLargePages:
    """Pages beyond 200 inches carry a /UserUnit."""

    def test_user_unit_written_and_honoured(self, gradient_png, settings):
        result = embed_image_to_pdf(gradient_png(60, 10), width_cm=600, height_cm=100, settings=settings)
        assert result.diagnostics.user_unit == 2
        with _open(result.pdf_buffer) as doc:
            assert doc.xref_get_key(doc[0].xref, "UserUnit")[1] == "2"

        report = validate_print_pdf(
            result.pdf_buffer,
            expected_page_width_cm=600,
            expected_page_height_cm=100,
            expected_area_width_cm=600,
            expected_area_height_cm=100,
        )
        assert report.ok is True
        assert report.user_unit == 2


def test_background_fills_bleed(gradient_png, settings):
    result = embed_image_to_pdf(gradient_png(60, 40), bleed_cm=2, background="#ff0000", settings=settings)
    with _open(result.pdf_buffer) as doc:
        assert b"1 0 0 rg" in doc[0].read_contents()
        pix = doc[0].get_pixmap(dpi=36)
        # the output intent makes MuPDF colour-manage the fill
        assert all(abs(got - want) <= 2 for got, want in zip(pix.pixel(1, 1), (255, 0, 0)))


def test_diagnostics_serialise(gradient_png, settings):
    result = embed_image_to_pdf(gradient_png(), diag_id="abc", settings=settings)
    info = result.diagnostics.to_dict()
    assert info["diag_id"] == "abc"
    assert info["qa"]["psnr"] == math.inf
    assert math.isfinite(info["actual_ppi"])
    assert info["source_mime"] == "image/png"


def _gray16_png(width=200, height=100):
    ramp = np.tile(np.linspace(0, 65535, width), (height, 1)).astype(np.uint16)
    return encode(Image.fromarray(ramp), "PNG")


class TestHighBitDepth:
    """16-bit gray sources are reduced to 8 bits, not clipped."""

    def test_gray16_ramp_keeps_its_tones(self, settings):
        result = embed_image_to_pdf(_gray16_png(), settings=settings)
        assert result.qa.passed is True

        extracted = extract_page_image(result.pdf_buffer)
        assert extracted.components == 1
        samples = np.frombuffer(extracted.raw, dtype=np.uint8)
        assert samples.min() == 0
        assert samples.max() == 255
        assert samples.mean() == pytest.approx(127.5, abs=1.5)

    def test_reference_scales_by_nominal_range(self):
        source = read_source_image(_gray16_png(), 10_000_000)
        reference = np.asarray(to_rgb_reference(decode_pixels(source)))
        assert reference.shape == (100, 200, 3)
        assert reference.mean() == pytest.approx(127.5, abs=1.0)

    def test_clipping_reduction_fails_qa(self, monkeypatch, settings):
        monkeypatch.setattr("printready.embedder._reduce_bit_depth", lambda image: image.convert("L"))
        with pytest.raises(QaCheckFailedError):
            embed_image_to_pdf(_gray16_png(), settings=settings)


def test_source_dpi_reported(settings):
    buffer = encode(make_gradient(60, 40), "PNG", dpi=(300, 300))
    result = embed_image_to_pdf(buffer, settings=settings)
    assert result.diagnostics.source_dpi == pytest.approx((300, 300), abs=0.01)
    assert embed_image_to_pdf(encode(make_gradient(60, 40), "PNG"), settings=settings).diagnostics.source_dpi is None
