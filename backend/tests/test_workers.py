import io
from datetime import datetime, timezone

from PIL import Image as PILImage, ImageCms

from lightbox.models.image import ImageLabel
from lightbox.models.job import JobStatus
from lightbox.services.imaging.xmp import read_xmp
from lightbox.services.jobs.workers import exif_process, image_process, registry, xmp_generation

from conftest import USER_HEADERS

TAKEN = datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

SIDECAR = b"""<x:xmpmeta xmlns:x="adobe:ns:meta/">
  <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
    <rdf:Description rdf:about=""
        xmlns:xmp="http://ns.adobe.com/xap/1.0/"
        xmlns:dc="http://purl.org/dc/elements/1.1/"
        xmp:Rating="3" xmp:Label="Green">
      <dc:subject><rdf:Bag><rdf:li>forest</rdf:li></rdf:Bag></dc:subject>
    </rdf:Description>
  </rdf:RDF>
</x:xmpmeta>"""


def test_image_process_fills_derived_fields(client, runtime, create_image, run_job, make_jpeg):
    image = create_image(make_jpeg(1920, 1080, date_time_original="2020:01:02 03:04:05"))

    job_uid, status = run_job(image_process.TOPIC, image.uid)
    assert status == JobStatus.COMPLETED

    stored = runtime.assets.read_metadata(image.uid)
    metadata = stored.metadata_record
    assert metadata.file_created_at == TAKEN
    assert metadata.file_modified_at == TAKEN
    assert metadata.thumbhash
    assert metadata.color_space == "sRGB"
    assert stored.processed is True
    assert stored.taken_at == TAKEN

    with PILImage.open(runtime.assets.thumbnail_path(stored)) as thumb:
        assert thumb.width == 200

    response = client.get(f"/images/{image.uid}/file?format=webp&w=400&h=400&quality=85", headers=USER_HEADERS)
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/webp"
    assert response.headers["x-transform-cache"] == "hit"

    job = runtime.bus.get(job_uid)
    assert job.status == JobStatus.COMPLETED


def test_image_process_without_exif_uses_creation_time(runtime, create_image, run_job):
    image = create_image()
    _, status = run_job(image_process.TOPIC, image.uid)

    assert status == JobStatus.COMPLETED
    metadata = runtime.assets.read_metadata(image.uid).metadata_record
    assert metadata.file_created_at == image.created_at
    assert metadata.file_modified_at == image.created_at


def test_image_process_missing_file_fails_without_retry(runtime, create_image, run_job):
    image = create_image()
    runtime.assets.original_path(image).unlink()

    job_uid, status = run_job(image_process.TOPIC, image.uid)

    assert status == JobStatus.FAILED
    job = runtime.bus.get(job_uid)
    assert job.error_code == "fatal_error"


def test_exif_process_merges_sidecar_without_overwriting(runtime, create_image, run_job, make_jpeg):
    image = create_image(make_jpeg(make="Canon"))
    runtime.assets.sidecar_path(image).write_bytes(SIDECAR)
    # A rating the user already chose must survive
    runtime.assets.patch(image.uid, lambda m: setattr(m, "rating", 5))

    _, status = run_job(exif_process.TOPIC, image.uid)
    assert status == JobStatus.COMPLETED

    stored = runtime.assets.read_metadata(image.uid)
    metadata = stored.metadata_record
    assert metadata.rating == 5
    assert metadata.label == ImageLabel.GREEN
    assert metadata.keywords == ["forest"]
    assert stored.exif_record.make == "Canon"

    first = stored.model_dump()
    _, status = run_job(exif_process.TOPIC, image.uid)
    assert status == JobStatus.COMPLETED
    second = runtime.assets.read_metadata(image.uid).model_dump()
    for key in ("image_metadata", "exif", "taken_at"):
        assert first[key] == second[key]


def test_exif_process_needs_work_only_without_exif(runtime, create_image, run_job):
    image = create_image()
    handler = runtime.handler_for(registry.job_type("exifProcessing"))
    assert handler.needs_work(runtime.assets.read_metadata(image.uid))

    run_job(exif_process.TOPIC, image.uid)
    assert not handler.needs_work(runtime.assets.read_metadata(image.uid))


def test_xmp_generation_writes_sidecar(runtime, create_image, run_job, make_jpeg):
    image = create_image(make_jpeg(make="Nikon", date_time_original="2021:07:08 09:10:11"))
    run_job(exif_process.TOPIC, image.uid)

    def tag(metadata):
        metadata.rating = 4
        metadata.label = ImageLabel.RED
        metadata.keywords = ["city", "night"]

    runtime.assets.patch(image.uid, tag)

    _, status = run_job(xmp_generation.TOPIC, image.uid)
    assert status == JobStatus.COMPLETED

    sidecar = runtime.assets.sidecar_path(runtime.assets.read_metadata(image.uid))
    body = sidecar.read_bytes()
    assert b"Lightbox Image Management System" in body
    assert b"Nikon" in body
    assert b"2021-07-08T09:10:11" in body

    fields = read_xmp(body)
    assert fields.rating() == 4
    assert fields.label() == ImageLabel.RED
    assert fields.subjects == ["city", "night"]


def test_xmp_generation_before_exif_processing_reads_original(runtime, create_image, run_job, make_jpeg):
    image = create_image(make_jpeg(make="Pentax", date_time_original="2022:02:03 04:05:06"))
    assert runtime.assets.read_metadata(image.uid).exif is None

    _, status = run_job(xmp_generation.TOPIC, image.uid)
    assert status == JobStatus.COMPLETED

    body = runtime.assets.sidecar_path(runtime.assets.read_metadata(image.uid)).read_bytes()
    assert b"Pentax" in body
    assert b"2022-02-03T04:05:06" in body
    # EXIF stays owned by exif_process
    assert runtime.assets.read_metadata(image.uid).exif is None


def test_exif_process_refreshes_color_info(runtime, create_image, run_job):
    profile = ImageCms.ImageCmsProfile(ImageCms.createProfile("sRGB")).tobytes()
    buffer = io.BytesIO()
    PILImage.new("L", (40, 30), 128).save(buffer, format="JPEG", icc_profile=profile)
    image = create_image(buffer.getvalue())

    def forget(metadata):
        metadata.color_space = None
        metadata.has_icc_profile = None

    runtime.assets.patch(image.uid, forget)
    _, status = run_job(exif_process.TOPIC, image.uid)

    assert status == JobStatus.COMPLETED
    metadata = runtime.assets.read_metadata(image.uid).metadata_record
    assert metadata.color_space == "B_W"
    assert metadata.has_icc_profile is True
