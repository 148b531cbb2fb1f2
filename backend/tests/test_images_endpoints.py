from conftest import ADMIN_HEADERS, OTHER_HEADERS, USER_HEADERS


def test_upload_creates_image_and_queues_processing(client, runtime, make_jpeg):
    response = client.post(
        "/images",
        files={"data": ("beach.jpg", make_jpeg(80, 60), "image/jpeg")},
        headers=USER_HEADERS,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["owner_uid"] == "user-1"
    assert body["width"] == 80 and body["height"] == 60
    assert body["image_metadata"]["original_file_name"] == "beach.jpg"
    assert body["paths"]["thumbnail"] == f"/images/{body['uid']}/file?format=webp&w=400&h=400&quality=85"

    counts = runtime.bus.counts()
    assert counts.queued_by_topic["image_process"] == 1
    assert counts.queued_by_topic["exif_process"] == 1
    assert counts.queued_by_topic["xmp_generation"] == 1
    jobs = runtime.bus.list_jobs()
    assert sorted(job.topic for job in jobs) == ["exif_process", "image_process", "xmp_generation"]
    assert {job.image_uid for job in jobs} == {body["uid"]}


def test_upload_rejects_bad_input(client, make_jpeg):
    response = client.post("/images", files={"data": ("x.jpg", b"nope", "image/jpeg")}, headers=USER_HEADERS)
    assert response.status_code == 400

    response = client.post(
        "/images",
        files={"data": ("x.jpg", make_jpeg(), "image/jpeg")},
        data={"checksum": "0" * 40},
        headers=USER_HEADERS,
    )
    assert response.status_code == 400

    response = client.post("/images", files={"data": ("x.jpg", make_jpeg(), "image/jpeg")})
    assert response.status_code == 401


def test_url_upload_disabled_by_default(client):
    response = client.post("/images/url", json={"url": "http://example.com/a.jpg"}, headers=USER_HEADERS)
    assert response.status_code == 403


def test_list_hides_private_images_of_others(client, create_image):
    mine = create_image(private=True)
    public = create_image(owner_uid="user-2")
    hidden = create_image(owner_uid="user-2", private=True)

    listed = client.get("/images", headers=USER_HEADERS).json()
    uids = {item["uid"] for item in listed["items"]}
    assert uids == {mine.uid, public.uid}
    assert listed["total"] == 2

    admin_uids = {item["uid"] for item in client.get("/images", headers=ADMIN_HEADERS).json()["items"]}
    assert hidden.uid in admin_uids

    assert client.get(f"/images/{hidden.uid}", headers=USER_HEADERS).status_code == 404


def test_patch_updates_fields(client, create_image):
    image = create_image()
    response = client.patch(
        f"/images/{image.uid}",
        json={"name": "Renamed", "rating": 4, "label": "Red", "keywords": ["a", "b"]},
        headers=USER_HEADERS,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Renamed"
    assert body["image_metadata"]["rating"] == 4
    assert body["image_metadata"]["label"] == "Red"
    assert body["image_metadata"]["keywords"] == ["a", "b"]

    assert client.patch(f"/images/{image.uid}", json={"rating": 9}, headers=USER_HEADERS).status_code == 400
    assert client.patch(f"/images/{image.uid}", json={"name": "x"}, headers=OTHER_HEADERS).status_code == 403


def test_patch_rejects_null_for_required_columns(client, create_image):
    image = create_image(private=True)

    for body in ({"private": None}, {"name": None}, {"name": "  "}):
        response = client.patch(f"/images/{image.uid}", json=body, headers=USER_HEADERS)
        assert response.status_code == 400, body
        assert "error" in response.json()

    stored = client.get(f"/images/{image.uid}", headers=USER_HEADERS).json()
    assert stored["private"] is True
    assert stored["name"] == image.name

    # Nullable fields can still be cleared
    response = client.patch(f"/images/{image.uid}", json={"description": None, "rating": None}, headers=USER_HEADERS)
    assert response.status_code == 200


def test_soft_delete_and_restore(client, settings, create_image):
    image = create_image()
    response = client.request("DELETE", "/images", json={"uids": [image.uid]}, headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.json()["deleted"] == [image.uid]

    assert client.get(f"/images/{image.uid}/file", headers=USER_HEADERS).status_code == 404
    assert (settings.trash_dir / image.uid).is_dir()
    assert not (settings.library_dir / image.uid).exists()

    trash = client.get("/images?deleted=true", headers=USER_HEADERS).json()
    assert [item["uid"] for item in trash["items"]] == [image.uid]

    response = client.post(f"/images/{image.uid}/restore", headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.json()["deleted_at"] is None
    assert client.get(f"/images/{image.uid}/file", headers=USER_HEADERS).status_code == 200


def test_delete_reports_partial_failures(client, create_image):
    mine = create_image()
    theirs = create_image(owner_uid="user-2")

    response = client.request(
        "DELETE", "/images", json={"uids": [mine.uid, theirs.uid]}, headers=USER_HEADERS
    )
    assert response.status_code == 207
    body = response.json()
    assert body["deleted"] == [mine.uid]
    assert [f["uid"] for f in body["failed"]] == [theirs.uid]

    response = client.request("DELETE", "/images", json={"uids": ["missing-1"]}, headers=USER_HEADERS)
    assert response.status_code == 404

    response = client.request("DELETE", "/images", json={"uids": [theirs.uid]}, headers=USER_HEADERS)
    assert response.status_code == 403


def test_force_delete_removes_everything(client, runtime, settings, create_image):
    image = create_image()
    client.request("DELETE", "/images", json={"uids": [image.uid]}, headers=USER_HEADERS)

    response = client.request("DELETE", "/images", json={"uids": [image.uid], "force": True}, headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.json()["force"] is True
    assert not (settings.trash_dir / image.uid).exists()
    assert client.post(f"/images/{image.uid}/restore", headers=USER_HEADERS).status_code == 404


def test_exif_endpoint(client, create_image, make_jpeg):
    image = create_image(make_jpeg(make="Fujifilm", date_time_original="2019:05:06 07:08:09"))

    response = client.get(f"/images/{image.uid}/exif", headers=USER_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["exif"]["make"] == "Fujifilm"
    assert body["tags"]["DateTimeOriginal"] == "2019:05:06 07:08:09"

    # Not processed yet, so the stored record is empty
    assert client.get(f"/images/{image.uid}/exif?simple=true", headers=USER_HEADERS).json() == {}


def test_errors_use_error_body_and_request_id(client):
    response = client.get("/images/does-not-exist", headers={**USER_HEADERS, "X-Request-Id": "req-1"})
    assert response.status_code == 404
    assert response.json() == {"error": "Image not found"}
    assert response.headers["x-request-id"] == "req-1"

    assert client.get("/images").status_code == 401
