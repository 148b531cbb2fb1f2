"""Thumbnail, thumbhash, EXIF and permanent transforms for a freshly uploaded image."""

import logging

from lightbox.core.errors import FatalJobError, NotFound
from lightbox.models.image import ImageMetadata
from lightbox.services.asset_store import AssetStore, atomic_write
from lightbox.services.imaging import exif as exif_reader
from lightbox.services.imaging import pipeline
from lightbox.services.imaging.thumbhash import encode_thumbhash, image_to_thumbhash
from lightbox.services.jobs.worker_pool import JobContext
from lightbox.services.transforms.engine import TransformEngine

logger = logging.getLogger(__name__)

TOPIC = "image_process"
THUMBNAIL_WIDTH = 200
THUMBHASH_SOURCE_SIZE = 32


class ImageProcessHandler:
    def __init__(self, assets: AssetStore, transforms: TransformEngine):
        self.assets = assets
        self.transforms = transforms

    def needs_work(self, image) -> bool:
        metadata = image.metadata_record
        return metadata is None or not metadata.thumbhash

    def __call__(self, ctx: JobContext) -> None:
        uid = ctx.image_uid
        if not uid:
            raise FatalJobError("payload has no image_uid")

        ctx.progress("read", 25)
        try:
            image = self.assets.read_metadata(uid)
            data = self.assets.read(uid)
        except NotFound as exc:
            raise FatalJobError(f"image {uid}: {exc.message}") from exc
        try:
            decoded = pipeline.decode(data)
        except pipeline.DecodeError as exc:
            raise FatalJobError(str(exc)) from exc
        color_space, has_icc = pipeline.color_info(decoded.image)
        prepared = pipeline.prepare(decoded)

        ctx.progress("thumbnail", 40)
        thumbnail = pipeline.thumbnail_from_image(prepared, THUMBNAIL_WIDTH)
        atomic_write(self.assets.thumbnail_path(image), thumbnail)

        ctx.progress("thumbhash", 55)
        source = pipeline.create_thumbnail(thumbnail, THUMBHASH_SOURCE_SIZE, THUMBHASH_SOURCE_SIZE)
        thumbhash = encode_thumbhash(image_to_thumbhash(pipeline.decode(source).image))

        ctx.progress("exif", 70)
        exif = exif_reader.extract_exif(data)
        created, modified = exif_reader.file_dates(exif, now=image.created_at)

        ctx.progress("transforms", 80)
        warmed = self.transforms.warm_permanent(image, prepared)

        ctx.progress("save", 90)

        def apply(metadata: ImageMetadata) -> None:
            metadata.thumbhash = thumbhash
            metadata.color_space = color_space
            metadata.has_icc_profile = has_icc
            metadata.file_created_at = created
            metadata.file_modified_at = modified

        columns = {"processed": True}
        if image.taken_at is None:
            columns["taken_at"] = exif_reader.taken_at(image, exif)
        self.assets.patch(uid, apply, exif=exif, **columns)
        logger.info("Image processed", extra={"uid": uid, "job_id": ctx.job_uid, "warmed": warmed})
