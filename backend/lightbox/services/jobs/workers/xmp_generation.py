import logging

from lightbox.core.errors import FatalJobError, NotFound
from lightbox.models.image import Image
from lightbox.services.asset_store import AssetStore, atomic_write
from lightbox.services.imaging.exif import extract_exif
from lightbox.services.imaging.xmp import build_sidecar
from lightbox.services.jobs.worker_pool import JobContext

logger = logging.getLogger(__name__)

TOPIC = "xmp_generation"


class XmpGenerationHandler:
    """Write the ``.xmp`` sidecar next to the original, replacing any previous one."""

    def __init__(self, assets: AssetStore):
        self.assets = assets

    def needs_work(self, image: Image) -> bool:
        return not self.assets.sidecar_path(image).exists()

    def __call__(self, ctx: JobContext) -> None:
        uid = ctx.image_uid
        if not uid:
            raise FatalJobError("payload has no image_uid")

        ctx.progress("read", 30)
        try:
            image = self.assets.read_metadata(uid)
        except NotFound as exc:
            raise FatalJobError(f"image {uid}: {exc.message}") from exc

        if image.exif is None:
            # Uploads queue this next to exif_process; the row may not have EXIF yet
            try:
                data = self.assets.read(uid)
            except (NotFound, OSError) as exc:
                raise FatalJobError(f"image {uid}: cannot read original: {exc}") from exc
            image.exif = extract_exif(data).to_json()

        ctx.progress("write", 70)
        path = self.assets.sidecar_path(image)
        atomic_write(path, build_sidecar(image))
        logger.info("XMP sidecar written", extra={"uid": uid, "job_id": ctx.job_uid, "path": str(path)})
