"""Tests for the image conversion endpoints."""
import asyncio
import base64
import io
import os

import httpx
import pytest
from PIL import Image

from app.images import service as service_module
from app.images.router import get_upload_store
from app.images.storage import UploadStore
from app.main import app

ENDPOINTS = [
    ("/convert-to-webp", "webpImage"),
    ("/optimize-image", "optimizedImage"),
    ("/optimize-and-convert", "optimizedWebpImage"),
]


def _decode(body: dict, field: str) -> bytes:
    assert list(body.keys()) == [field]
    return base64.b64decode(body[field])


def _is_webp(data: bytes) -> bool:
    return data[:4] == b"RIFF" and data[8:12] == b"WEBP"


def _is_jpeg(data: bytes) -> bool:
    return data[:2] == b"\xff\xd8"


class TestSuccessfulConversions:
    """Happy-path responses for all three endpoints."""

    def test_convert_to_webp_returns_webp(self, api_client, make_image, upload_dir):
        response = api_client.post(
            "/convert-to-webp",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
            data={"quality": "70"},
        )

        assert response.status_code == 200
        data = _decode(response.json(), "webpImage")
        assert _is_webp(data)
        with Image.open(io.BytesIO(data)) as im:
            assert im.format == "WEBP"
            assert im.size == (64, 48)
        assert os.listdir(upload_dir) == []

    def test_optimize_image_returns_jpeg(self, api_client, make_image, upload_dir):
        response = api_client.post(
            "/optimize-image",
            files={"image": ("photo.png", make_image("PNG"), "image/png")},
        )

        assert response.status_code == 200
        data = _decode(response.json(), "optimizedImage")
        assert _is_jpeg(data)
        assert os.listdir(upload_dir) == []

    def test_optimize_image_flattens_alpha(self, api_client, make_image):
        response = api_client.post(
            "/optimize-image",
            files={"image": ("alpha.png", make_image("PNG", mode="RGBA"), "image/png")},
        )

        assert response.status_code == 200
        with Image.open(io.BytesIO(_decode(response.json(), "optimizedImage"))) as im:
            assert im.format == "JPEG"
            assert im.mode == "RGB"

    def test_optimize_and_convert_returns_webp_without_intermediate(
        self, api_client, make_image, upload_dir
    ):
        response = api_client.post(
            "/optimize-and-convert",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
            data={"quality": "80"},
        )

        assert response.status_code == 200
        assert _is_webp(_decode(response.json(), "optimizedWebpImage"))
        assert not any(name.startswith("optimized-") for name in os.listdir(upload_dir))
        assert os.listdir(upload_dir) == []

    def test_webp_upload_can_be_converted_to_webp(self, api_client, make_image, upload_dir):
        response = api_client.post(
            "/convert-to-webp",
            files={"image": ("already.webp", make_image("WEBP"), "image/webp")},
        )

        assert response.status_code == 200
        assert _is_webp(_decode(response.json(), "webpImage"))
        assert os.listdir(upload_dir) == []

    def test_palette_gif_converts(self, api_client, make_image):
        response = api_client.post(
            "/optimize-and-convert",
            files={"image": ("anim.gif", make_image("GIF", mode="P"), "image/gif")},
        )

        assert response.status_code == 200
        assert _is_webp(_decode(response.json(), "optimizedWebpImage"))


class TestQualityParameter:
    """quality form field parsing as seen by the encoder."""

    @pytest.fixture
    def recorded(self, monkeypatch):
        calls = []
        real_save_webp = service_module.save_webp

        def spy(source, target, quality, effort):
            calls.append({"quality": quality, "effort": effort})
            return real_save_webp(source, target, quality, effort)

        monkeypatch.setattr(service_module, "save_webp", spy)
        return calls

    @pytest.mark.parametrize("raw", [None, "", "abc", "0"])
    def test_missing_or_non_numeric_quality_defaults_to_80(
        self, api_client, make_image, recorded, raw
    ):
        data = {} if raw is None else {"quality": raw}
        response = api_client.post(
            "/convert-to-webp",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
            data=data,
        )

        assert response.status_code == 200
        assert recorded == [{"quality": 80, "effort": 4}]

    def test_numeric_quality_passed_through(self, api_client, make_image, recorded):
        response = api_client.post(
            "/convert-to-webp",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
            data={"quality": "35"},
        )

        assert response.status_code == 200
        assert recorded == [{"quality": 35, "effort": 4}]

    def test_chained_conversion_uses_max_effort(self, api_client, make_image, recorded):
        response = api_client.post(
            "/optimize-and-convert",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
            data={"quality": "60"},
        )

        assert response.status_code == 200
        assert recorded == [{"quality": 60, "effort": 6}]


class TestErrorResponses:
    """400/500 mapping and cleanup on failure."""

    @pytest.mark.parametrize("path,_field", ENDPOINTS)
    def test_missing_file_returns_400(self, api_client, upload_dir, path, _field):
        response = api_client.post(path, data={"quality": "80"})

        assert response.status_code == 400
        assert response.json() == {"error": "No file uploaded"}
        assert os.listdir(upload_dir) == []

    @pytest.mark.parametrize("path,_field", ENDPOINTS)
    def test_oversized_file_returns_400(self, api_client, upload_dir, path, _field):
        limit = 1024 * 1024
        app.dependency_overrides[get_upload_store] = lambda: UploadStore(upload_dir, limit)

        response = api_client.post(
            path,
            files={"image": ("big.jpg", b"\0" * (limit + 1), "image/jpeg")},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert "1MB" in error
        assert "Maximum upload size" in error
        assert os.listdir(upload_dir) == []

    def test_file_at_limit_is_accepted(self, api_client, make_image, upload_dir):
        payload = make_image("JPEG")
        app.dependency_overrides[get_upload_store] = lambda: UploadStore(upload_dir, len(payload))

        response = api_client.post(
            "/convert-to-webp",
            files={"image": ("photo.jpg", payload, "image/jpeg")},
        )

        assert response.status_code == 200

    @pytest.mark.parametrize("path,_field", ENDPOINTS)
    def test_undecodable_upload_returns_500(self, api_client, upload_dir, path, _field):
        response = api_client.post(
            path,
            files={"image": ("broken.jpg", b"this is not an image", "image/jpeg")},
        )

        assert response.status_code == 500
        assert response.json()["error"].startswith("Processing failed: ")
        assert os.listdir(upload_dir) == []

    def test_failure_in_second_step_cleans_up_intermediate(
        self, api_client, make_image, upload_dir, monkeypatch
    ):
        def failing_webp(source, target, quality, effort):
            target.write_bytes(b"partial")
            raise OSError("encoder exploded")

        monkeypatch.setattr(service_module, "save_webp", failing_webp)

        response = api_client.post(
            "/optimize-and-convert",
            files={"image": ("photo.jpg", make_image("JPEG"), "image/jpeg")},
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Processing failed: encoder exploded"}
        assert os.listdir(upload_dir) == []

    @pytest.mark.parametrize(
        "filename,payload",
        [
            ("bad.jpg", b"junk bytes"),
            ("a." + "x" * 300, b"\xff\xd8 name too long for the filesystem"),
        ],
    )
    def test_server_errors_keep_cors_header(self, api_client, upload_dir, filename, payload):
        response = api_client.post(
            "/convert-to-webp",
            files={"image": (filename, payload, "image/jpeg")},
            headers={"Origin": "http://localhost:3000"},
        )

        assert response.status_code == 500
        assert response.json()["error"].startswith("Processing failed: ")
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert os.listdir(upload_dir) == []

    def test_text_value_for_image_field_returns_400(self, api_client, upload_dir):
        response = api_client.post("/convert-to-webp", data={"image": "not-a-file"})

        assert response.status_code == 400
        assert "error" in response.json()


class TestConcurrentRequests:
    """Simultaneous uploads share the scratch directory safely."""

    @pytest.mark.asyncio
    async def test_same_filename_uploads_get_distinct_paths(
        self, upload_store, make_image, upload_dir, monkeypatch
    ):
        stored_paths = []
        real_receive = UploadStore.receive

        async def recording_receive(self, file, scope):
            upload = await real_receive(self, file, scope)
            stored_paths.append(upload.path)
            return upload

        monkeypatch.setattr(UploadStore, "receive", recording_receive)

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            responses = await asyncio.gather(*[
                client.post(
                    "/convert-to-webp",
                    files={"image": ("same.jpg", make_image("JPEG", color=color), "image/jpeg")},
                )
                for color in [(255, 0, 0), (0, 0, 255)]
            ])

        assert [r.status_code for r in responses] == [200, 200]
        for r in responses:
            assert _is_webp(base64.b64decode(r.json()["webpImage"]))
        assert len(set(stored_paths)) == 2
        assert os.listdir(upload_dir) == []


def test_health(api_client):
    response = api_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_cors_allows_configured_origin(api_client):
    response = api_client.options(
        "/convert-to-webp",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Content-Type",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
