"""Tests for Image Search client."""

import io
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from app.core.config import Settings
from app.services.image_search import ImageSearchClient
from app.utils.backoff import BackoffExecutor


def _image_bytes(size, fmt="PNG"):
    buffer = io.BytesIO()
    Image.new("RGB", size, color=(40, 90, 160)).save(buffer, format=fmt)
    return buffer.getvalue()


def _response(payload=None, content=b""):
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = payload or {}
    response.content = content
    response.text = ""
    return response


@pytest.fixture
def client(logger):
    settings = Settings(_env_file=None, google_cse_id="cx", google_cse_key="key")
    return ImageSearchClient(settings, logger, backoff=BackoffExecutor(logger, sleep=lambda s: None))


def test_search_disabled_without_credentials(logger):
    client = ImageSearchClient(Settings(_env_file=None, google_cse_id=None, google_cse_key=None), logger)
    with patch("app.services.image_search.requests.get") as mock_get:
        assert client.search("mars rover") == []
    mock_get.assert_not_called()


@patch("app.services.image_search.requests.get")
def test_search_filters_small_and_duplicate_results(mock_get, client):
    mock_get.return_value = _response(
        payload={
            "items": [
                {"link": "https://img/a.jpg", "image": {"width": 1920, "height": 1080}},
                {"link": "https://img/small.jpg", "image": {"width": 640, "height": 480}},
                {"link": "https://img/a.jpg", "image": {"width": 1920, "height": 1080}},
                {"link": "https://img/b.jpg", "image": {}},
            ]
        }
    )

    assert client.search("mars rover", max_results=20) == ["https://img/a.jpg", "https://img/b.jpg"]
    params = mock_get.call_args.kwargs["params"]
    assert params["searchType"] == "image"
    assert params["num"] == 10


@patch("app.services.image_search.requests.get")
def test_download_keeps_large_images_as_jpeg(mock_get, client, tmp_path):
    mock_get.return_value = _response(content=_image_bytes((1200, 800)))

    saved = client.download_image("https://img/a.png", tmp_path / "img_0.jpg")

    assert saved == tmp_path / "img_0.jpg"
    with Image.open(saved) as img:
        assert img.format == "JPEG"
        assert img.size == (1200, 800)


@patch("app.services.image_search.requests.get")
def test_download_rejects_tiny_and_broken_images(mock_get, client, tmp_path):
    mock_get.side_effect = [_response(content=_image_bytes((120, 90))), _response(content=b"<html>nope</html>")]

    assert client.download_image("https://img/tiny.png", tmp_path / "tiny.jpg") is None
    assert client.download_image("https://img/page", tmp_path / "page.jpg") is None
    assert not (tmp_path / "tiny.jpg").exists()


def test_fetch_images_stops_at_count(client, tmp_path):
    client.search = MagicMock(return_value=["u1", "u2", "u3", "u4"])
    client.download_image = MagicMock(side_effect=[None, tmp_path / "x_1.jpg", tmp_path / "x_2.jpg"])

    paths = client.fetch_images("jezero crater", 2, tmp_path, "x")

    assert paths == [tmp_path / "x_1.jpg", tmp_path / "x_2.jpg"]
    assert client.download_image.call_count == 3
    client.search.assert_called_once_with("jezero crater", max_results=6)
