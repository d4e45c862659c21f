"""HTTP surface tests through FastAPI's TestClient."""
import json

import pytest
from fastapi.testclient import TestClient

import printready.main as main
from printready.config import Settings


@pytest.fixture
def client(monkeypatch, settings):
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return TestClient(main.app)


def _compose_spec(**overrides):
    spec = {
        "canvas_px": {"w": 1080, "h": 1080},
        "place_px": {"x": 0, "y": 0, "w": 1080, "h": 1080},
        "width_cm": 5,
        "height_cm": 5,
        "bleed_mm": 2,
        "dpi": 100,
    }
    spec.update(overrides)
    return json.dumps(spec)


class TestImageToPrintPdf:
    """POST /api/image_to_print_pdf"""

    def test_returns_pdf_with_debug_header(self, client, gradient_jpeg):
        response = client.post(
            "/api/image_to_print_pdf",
            files={"file": ("photo.jpg", gradient_jpeg(120, 80), "image/jpeg")},
            data={"width_cm": "12", "height_cm": "8", "bleed_cm": "0.3"},
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")

        debug = json.loads(response.headers["x-debug-info"])
        assert debug["width_px"] == 120
        assert debug["width_cm"] == 12
        assert debug["embedded_format"] == "jpeg"
        assert debug["diagnostics"]["qa"]["method"] == "stream"

    def test_rejects_non_image_upload(self, client):
        response = client.post(
            "/api/image_to_print_pdf",
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert response.status_code == 400

    def test_image_too_large_is_413(self, monkeypatch, gradient_png):
        monkeypatch.setattr(main, "get_settings", lambda: Settings(max_pixels=10))
        response = TestClient(main.app).post(
            "/api/image_to_print_pdf",
            files={"file": ("big.png", gradient_png(40, 40), "image/png")},
        )
        assert response.status_code == 413
        body = response.json()
        assert body["code"] == "image_too_large"
        assert body["max_pixels"] == 10

    def test_invalid_dimension_is_400(self, client, gradient_png):
        response = client.post(
            "/api/image_to_print_pdf",
            files={"file": ("a.png", gradient_png(), "image/png")},
            data={"width_cm": "10"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_height_cm"


class TestGeneratePrintPdf:
    """POST /api/generate_print_pdf"""

    def test_missing_original_is_404(self, client):
        response = client.post("/api/generate_print_pdf", json={"width_cm": 10, "height_cm": 10, "rid": "r-7"})
        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "original_not_found"
        assert body["rid"] == "r-7"

    def test_invalid_width_is_400(self, client):
        response = client.post("/api/generate_print_pdf", json={"width_cm": 0, "height_cm": 10})
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_width_cm"


class TestValidatePdf:
    """POST /api/validate_pdf"""

    def test_round_trip_with_embedder_output(self, client, gradient_png):
        produced = client.post(
            "/api/image_to_print_pdf",
            files={"file": ("a.png", gradient_png(100, 50), "image/png")},
            data={"width_cm": "20", "height_cm": "10", "bleed_cm": "1"},
        )
        response = client.post(
            "/api/validate_pdf",
            files={"file": ("print.pdf", produced.content, "application/pdf")},
            data={
                "expected_page_width_cm": "22",
                "expected_page_height_cm": "12",
                "expected_area_width_cm": "20",
                "expected_area_height_cm": "10",
                "margin_cm": "1",
            },
        )
        assert response.status_code == 200
        report = response.json()
        assert report["ok"] is True
        assert report["tolerance_mm"] == 1

    def test_unparseable_pdf(self, client):
        response = client.post(
            "/api/validate_pdf",
            files={"file": ("x.pdf", b"not a pdf", "application/pdf")},
            data={"expected_page_width_cm": "10"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "pdf_parse_failed"


class TestCompose:
    """POST /api/compose"""

    def test_print_output(self, client, gradient_png):
        response = client.post(
            "/api/compose",
            files={"file": ("a.png", gradient_png(200, 200), "image/png")},
            data={"spec": _compose_spec()},
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        debug = json.loads(response.headers["x-debug-info"])
        assert debug["out_w_px"] == debug["inner_w_px"] + 2 * debug["bleed_px"]

    def test_invalid_bbox_is_422(self, client, gradient_png):
        response = client.post(
            "/api/compose",
            files={"file": ("a.png", gradient_png(), "image/png")},
            data={"spec": _compose_spec(place_px={"x": 4000, "y": 4000, "w": 100, "h": 100})},
        )
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "invalid_bbox"
        assert "clip_w" in body["debug"]

    def test_bad_spec_json(self, client, gradient_png):
        response = client.post(
            "/api/compose",
            files={"file": ("a.png", gradient_png(), "image/png")},
            data={"spec": "{not json"},
        )
        assert response.status_code == 400


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}
