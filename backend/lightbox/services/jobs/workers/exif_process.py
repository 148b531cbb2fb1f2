"""Re-extract EXIF and merge XMP ratings, labels and subjects into the row.

Values the user already set are never replaced; extraction only fills
rating, label and keywords while they are still empty.
"""

import logging
from typing import Optional

from lightbox.core.errors import FatalJobError, NotFound
from lightbox.models.image import Image, ImageLabel, ImageMetadata
from lightbox.services.asset_store import AssetStore
from lightbox.services.imaging import exif as exif_reader, pipeline
from lightbox.services.imaging.xmp import XmpFields, read_xmp
from lightbox.services.jobs.worker_pool import JobContext

logger = logging.getLogger(__name__)

TOPIC = "exif_process"


def merge_xmp(metadata: ImageMetadata, fields: Optional[XmpFields]) -> None:
    if fields is None:
        return
    if metadata.rating is None:
        metadata.rating = fields.rating()
    if metadata.label is None or metadata.label == ImageLabel.NONE:
        label = fields.label()
        if label is not None:
            metadata.label = label
    if not metadata.keywords and fields.subjects:
        metadata.keywords = list(fields.subjects)


class ExifProcessHandler:
    def __init__(self, assets: AssetStore):
        self.assets = assets

    def needs_work(self, image: Image) -> bool:
        return image.exif is None

    def _xmp_fields(self, image: Image, data: bytes) -> Optional[XmpFields]:
        fields = read_xmp(data)
        if fields is not None:
            return fields
        try:
            return read_xmp(self.assets.sidecar_path(image).read_bytes())
        except FileNotFoundError:
            return None

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

        ctx.progress("exif", 50)
        exif = exif_reader.extract_exif(data)
        created, modified = exif_reader.file_dates(exif, now=image.created_at)
        try:
            color = pipeline.color_info(pipeline.decode(data).image)
        except pipeline.DecodeError as exc:
            logger.warning("Cannot decode image, keeping color info", extra={"uid": uid, "error": str(exc)})
            color = None

        ctx.progress("xmp", 75)
        fields = self._xmp_fields(image, data)

        def apply(metadata: ImageMetadata) -> None:
            metadata.file_created_at = created
            metadata.file_modified_at = modified
            if color is not None:
                metadata.color_space, metadata.has_icc_profile = color
            merge_xmp(metadata, fields)

        ctx.progress("save", 90)
        self.assets.patch(uid, apply, exif=exif, taken_at=exif_reader.taken_at(image, exif))
        logger.info("EXIF processed", extra={"uid": uid, "job_id": ctx.job_uid, "has_xmp": fields is not None})
