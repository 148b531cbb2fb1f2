import httpx
import pytest

from lightbox.core.errors import InputInvalid
from lightbox.services import remote

from conftest import USER_HEADERS, jpeg_bytes


@pytest.fixture()
def serve(monkeypatch):
    """Route the URL fetcher's httpx client through an in-process handler."""
    real_client = httpx.Client

    def install(handler):
        monkeypatch.setattr(
            remote.httpx, "Client", lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs)
        )

    return install


def test_fetch_uses_disposition_then_path(serve):
    body = jpeg_bytes()
    serve(lambda request: httpx.Response(200, content=body, headers={"Content-Disposition": 'inline; filename="cat.jpg"'}))
    assert remote.fetch_image("https://img.example/x/123", 5, 1024 * 1024) == (body, "cat.jpg")

    serve(lambda request: httpx.Response(200, content=body))
    assert remote.fetch_image("https://img.example/x/dog%20one.jpg", 5, 1024 * 1024) == (body, "dog one.jpg")


def test_fetch_errors_become_invalid_input(serve):
    with pytest.raises(InputInvalid):
        remote.fetch_image("ftp://img.example/a.jpg", 5, 100)

    serve(lambda request: httpx.Response(404))
    with pytest.raises(InputInvalid, match="404"):
        remote.fetch_image("https://img.example/a.jpg", 5, 100)

    serve(lambda request: httpx.Response(200, content=b"x" * 500))
    with pytest.raises(InputInvalid, match="maximum upload size"):
        remote.fetch_image("https://img.example/a.jpg", 5, 100)


def test_url_upload_endpoint(client, settings, runtime, serve):
    settings.ENABLE_URL_UPLOAD = True
    serve(lambda request: httpx.Response(200, content=jpeg_bytes(30, 20)))

    response = client.post(
        "/images/url", json={"url": "https://img.example/pics/lake.jpg", "private": True}, headers=USER_HEADERS
    )
    assert response.status_code == 201
    body = response.json()
    assert body["private"] is True
    assert body["image_metadata"]["original_file_name"] == "lake.jpg"
    assert runtime.bus.counts().queued_by_topic["image_process"] == 1
