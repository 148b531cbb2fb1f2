import pytest

from conftest import ADMIN_HEADERS, OTHER_HEADERS, USER_HEADERS
from lightbox.core.errors import InputInvalid
from lightbox.models.image import ImageEXIF, ImageUpdate
from lightbox.services.search import parse_comparison, parse_query


def _uids(response):
    assert response.status_code == 200, response.text
    return {item["uid"] for item in response.json()["items"]}


@pytest.fixture()
def library(runtime, create_image, make_jpeg, make_png):
    beach = create_image(make_jpeg(120, 80), "beach.jpg")
    runtime.assets.update(beach.uid, ImageUpdate(description="Sunset at the coast", rating=5, keywords=["holiday"]))
    runtime.assets.patch(beach.uid, exif=ImageEXIF(make="Fujifilm", model="X-T4", iso="200", f_number="2.8"))

    tower = create_image(make_jpeg(60, 90), "tower.jpg")
    runtime.assets.update(tower.uid, ImageUpdate(rating=3, keywords=["city", "night"]))
    runtime.assets.patch(tower.uid, exif=ImageEXIF(make="Canon", iso="3200"))

    icon = create_image(make_png(32, 32), "icon.png", owner_uid="user-2")
    hidden = create_image(make_jpeg(), "secret beach.jpg", owner_uid="user-2", private=True)
    return {"beach": beach, "tower": tower, "icon": icon, "hidden": hidden}


def test_parse_query_splits_filters_from_text():
    criteria = parse_query('sunset "old town" rating:>=4 F:2.8 ext:png 12:30 note:')
    assert criteria.text == ["sunset", "old town", "12:30", "note:"]
    assert criteria.filters == {"rating": ">=4", "f_number": "2.8", "ext": "png"}

    assert parse_query(None).text == []
    with pytest.raises(InputInvalid):
        parse_query('"unterminated')


def test_parse_comparison():
    assert parse_comparison("5") == ("=", "5")
    assert parse_comparison(">=4") == (">=", "4")
    assert parse_comparison("<3") == ("<", "3")
    assert parse_comparison("") == ("=", "")


def test_text_matches_name_description_keywords_and_exif(client, library):
    assert _uids(client.get("/search?q=beach", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=COAST", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=night", headers=USER_HEADERS)) == {library["tower"].uid}
    assert _uids(client.get("/search?q=canon", headers=USER_HEADERS)) == {library["tower"].uid}
    # All terms have to match
    assert _uids(client.get("/search?q=sunset holiday", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=sunset city", headers=USER_HEADERS)) == set()


def test_filters(client, library):
    assert _uids(client.get("/search?q=rating:>=4", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=rating:3", headers=USER_HEADERS)) == {library["tower"].uid}
    assert _uids(client.get("/search?q=iso:3200", headers=USER_HEADERS)) == {library["tower"].uid}
    assert _uids(client.get("/search?q=make:fujifilm", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=aperture:2.8", headers=USER_HEADERS)) == {library["beach"].uid}
    assert _uids(client.get("/search?q=orientation:portrait", headers=USER_HEADERS)) == {library["tower"].uid}
    assert _uids(client.get("/search?q=orientation:square", headers=USER_HEADERS)) == {library["icon"].uid}
    assert _uids(client.get("/search?q=ext:png", headers=USER_HEADERS)) == {library["icon"].uid}
    assert _uids(client.get("/search?q=ext:jpeg orientation:landscape", headers=USER_HEADERS)) == {
        library["beach"].uid
    }


def test_invalid_filters_are_rejected(client, library):
    for q in ("rating:lots", "orientation:diagonal", "is:maybe"):
        response = client.get("/search", params={"q": q}, headers=USER_HEADERS)
        assert response.status_code == 400, q
        assert "error" in response.json()


def test_search_respects_privacy_and_trash(client, runtime, library):
    assert library["hidden"].uid not in _uids(client.get("/search?q=beach", headers=USER_HEADERS))
    assert library["hidden"].uid in _uids(client.get("/search?q=beach", headers=OTHER_HEADERS))
    assert library["hidden"].uid in _uids(client.get("/search?q=beach", headers=ADMIN_HEADERS))
    assert _uids(client.get("/search?q=is:private", headers=OTHER_HEADERS)) == {library["hidden"].uid}

    runtime.assets.soft_delete(library["beach"].uid)
    assert _uids(client.get("/search?q=make:fujifilm", headers=USER_HEADERS)) == set()

    assert client.get("/search?q=beach").status_code == 401


def test_empty_query_lists_visible_images_with_paging(client, library):
    body = client.get("/search?limit=2", headers=USER_HEADERS).json()
    assert body["total"] == 3
    assert len(body["items"]) == 2

    second = client.get("/search?limit=2&page=2", headers=USER_HEADERS).json()
    assert len(second["items"]) == 1
    assert client.get("/search?limit=0", headers=USER_HEADERS).status_code == 400
