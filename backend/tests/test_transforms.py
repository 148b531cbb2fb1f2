import io

import pytest
from PIL import Image as PILImage

from lightbox.services.transforms.engine import etag_matches
from lightbox.services.transforms.params import InvalidTransformParams, TransformParams, parse_transform_params
from lightbox.services.transforms.permanent import PERMANENT_TRANSFORMS, cache_key, file_url

from conftest import ADMIN_HEADERS, OTHER_HEADERS, USER_HEADERS


def test_parse_defaults_to_original():
    params = parse_transform_params({})
    assert params == TransformParams()
    assert params.is_original()
    # Quality or kernel alone do not change the original bytes
    assert parse_transform_params({"quality": "50", "kernel": "cubic"}).is_original()


@pytest.mark.parametrize(
    "query",
    [
        {"w": "abc"},
        {"w": "-1"},
        {"quality": "101"},
        {"rotate": "45"},
        {"format": "bmp"},
        {"flip": "diagonal"},
        {"kernel": "sinc"},
    ],
)
def test_parse_rejects_invalid_values(query):
    with pytest.raises(InvalidTransformParams):
        parse_transform_params(query)


def test_etag_changes_with_every_field():
    base = TransformParams(format="webp", width=800, quality=80)
    variants = [
        TransformParams(format="png", width=800, quality=80),
        TransformParams(format="webp", width=801, quality=80),
        TransformParams(format="webp", width=800, height=10, quality=80),
        TransformParams(format="webp", width=800, quality=81),
        TransformParams(format="webp", width=800, quality=80, rotate=90),
        TransformParams(format="webp", width=800, quality=80, flip="vertical"),
        TransformParams(format="webp", width=800, quality=80, kernel="nearest"),
    ]
    etags = {base.etag("abc")} | {v.etag("abc") for v in variants}
    assert len(etags) == len(variants) + 1
    assert base.etag("abc") != base.etag("abd")


def test_etag_matching():
    assert etag_matches('"abc"', "abc")
    assert etag_matches('W/"abc"', "abc")
    assert etag_matches('"x", "abc"', "abc")
    assert etag_matches("*", "abc")
    assert not etag_matches('"abcd"', "abc")
    assert not etag_matches(None, "abc")


def test_permanent_urls():
    assert file_url("u1") == "/images/u1/file"
    assert file_url("u1", PERMANENT_TRANSFORMS["thumbnail"]) == "/images/u1/file?format=webp&w=400&h=400&quality=85"


def test_original_is_served_with_checksum_etag(client, create_image, make_jpeg):
    data = make_jpeg()
    image = create_image(data)
    checksum = image.metadata_record.checksum

    response = client.get(f"/images/{image.uid}/file", headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.content == data
    assert response.headers["etag"] == f'"{checksum}"'
    assert response.headers["content-type"] == "image/jpeg"
    assert response.headers["cache-control"].startswith("private")

    response = client.get(
        f"/images/{image.uid}/file", headers={**USER_HEADERS, "If-None-Match": f'"{checksum}"'}
    )
    assert response.status_code == 304
    assert response.content == b""


def test_transform_is_cached_and_revalidated(client, runtime, create_image, make_jpeg):
    image = create_image(make_jpeg(1920, 1080))
    url = f"/images/{image.uid}/file?format=webp&w=800&h=0&quality=80"

    response = client.get(url, headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["x-transform-cache"] == "miss"
    assert PILImage.open(io.BytesIO(response.content)).size == (800, 450)

    etag = response.headers["etag"].strip('"')
    assert etag == TransformParams(format="webp", width=800, quality=80).etag(image.metadata_record.checksum)
    cached = runtime.assets.transforms_dir(image.uid) / f"{cache_key(etag)}.webp"
    assert cached.is_file()

    response = client.get(url, headers=USER_HEADERS)
    assert response.headers["x-transform-cache"] == "hit"

    # Revalidation never touches the original file
    runtime.assets.original_path(image).unlink()
    response = client.get(url, headers={**USER_HEADERS, "If-None-Match": f'"{etag}"'})
    assert response.status_code == 304


def test_transform_rotates_and_downloads(client, create_image, make_jpeg):
    image = create_image(make_jpeg(40, 20), filename="wide.jpg")
    response = client.get(f"/images/{image.uid}/file?rotate=90&format=png&download=true", headers=USER_HEADERS)
    assert response.status_code == 200
    assert PILImage.open(io.BytesIO(response.content)).size == (20, 40)
    assert 'filename="wide.png"' in response.headers["content-disposition"]


def test_invalid_transform_is_400(client, create_image):
    image = create_image()
    response = client.get(f"/images/{image.uid}/file?w=-5", headers=USER_HEADERS)
    assert response.status_code == 400
    assert "error" in response.json()


def test_private_file_hidden_and_anonymous_rejected(client, create_image):
    image = create_image(private=True)
    assert client.get(f"/images/{image.uid}/file", headers=OTHER_HEADERS).status_code == 404
    assert client.get(f"/images/{image.uid}/file").status_code == 401


def test_cache_admin_endpoints(client, runtime, create_image):
    image = create_image()
    client.get(f"/images/{image.uid}/file?format=png", headers=USER_HEADERS)

    status = client.get("/admin/cache", headers=ADMIN_HEADERS).json()
    assert status["files"] == 1
    assert client.get("/admin/cache", headers=USER_HEADERS).status_code == 403

    cleared = client.delete("/admin/cache", headers=ADMIN_HEADERS).json()
    assert cleared["removed_files"] == 1
    assert runtime.cache.status()["files"] == 0
