"""On-demand transforms served through the ETag-keyed disk cache."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from lightbox.core.errors import NotFound, ServerError
from lightbox.models.image import Image
from lightbox.services.asset_store import AssetStore
from lightbox.services.imaging import pipeline
from lightbox.services.transforms.cache import TransformCache
from lightbox.services.transforms.params import TransformParams
from lightbox.services.transforms.permanent import PERMANENT_TRANSFORMS

logger = logging.getLogger(__name__)

ORIGINAL_CACHE_CONTROL = "private, max-age=86400, no-transform"
TRANSFORM_CACHE_CONTROL = "public, max-age=604800, no-transform"


class TransformFailed(ServerError):
    pass


@dataclass
class TransformResult:
    status_code: int
    etag: str
    media_type: str
    cache_control: str
    last_modified: Optional[datetime] = None
    body: Optional[bytes] = None
    cache_hit: bool = False

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate.strip('"') == etag:
            return True
    return False


class TransformEngine:
    def __init__(self, assets: AssetStore, cache: TransformCache):
        self.assets = assets
        self.cache = cache

    def _read_original(self, image: Image) -> bytes:
        try:
            return self.assets.original_path(image).read_bytes()
        except FileNotFoundError:
            logger.error("Original file missing", extra={"uid": image.uid})
            raise NotFound("Image file not found") from None

    def serve(self, uid: str, params: TransformParams, if_none_match: Optional[str] = None) -> TransformResult:
        image = self.assets.read_metadata(uid)
        metadata = image.metadata_record
        if metadata is None or not metadata.checksum:
            raise NotFound("Image file not found")

        if params.is_original():
            result = TransformResult(
                status_code=200,
                etag=metadata.checksum,
                media_type=pipeline.media_type_for_extension(metadata.file_type),
                cache_control=ORIGINAL_CACHE_CONTROL,
                last_modified=image.updated_at,
            )
            if etag_matches(if_none_match, result.etag):
                result.status_code = 304
                return result
            result.body = self._read_original(image)
            return result

        output = self.output_for(params, metadata.file_type)
        result = TransformResult(
            status_code=200,
            etag=params.etag(metadata.checksum),
            media_type=output.media_type,
            cache_control=TRANSFORM_CACHE_CONTROL,
            last_modified=image.updated_at,
        )
        if etag_matches(if_none_match, result.etag):
            result.status_code = 304
            return result

        cached = self.cache.read(uid, result.etag, output.extension)
        if cached is not None:
            result.body = cached
            result.cache_hit = True
            return result

        result.body = self.render(self._read_original(image), params, output)
        self._store(uid, result.etag, output.extension, result.body)
        return result

    @staticmethod
    def output_for(params: TransformParams, file_type: str) -> pipeline.OutputFormat:
        if params.format:
            return pipeline.OUTPUT_FORMATS[params.format]
        return pipeline.output_for_extension(file_type)

    def _store(self, uid: str, etag: str, extension: str, body: bytes) -> None:
        try:
            self.cache.write(uid, etag, extension, body)
        except OSError as exc:
            logger.warning("Failed to write transform cache", extra={"uid": uid, "etag": etag, "error": str(exc)})

    def render(self, data: bytes, params: TransformParams, output: pipeline.OutputFormat) -> bytes:
        try:
            decoded = pipeline.decode(data)
        except pipeline.DecodeError as exc:
            raise TransformFailed(f"failed to decode image: {exc}") from exc
        return self.render_image(pipeline.prepare(decoded), params, output)

    def render_image(self, img, params: TransformParams, output: pipeline.OutputFormat) -> bytes:
        """Apply rotate, flip and resize to an already prepared image, then encode."""
        img = pipeline.rotate(img, params.rotate)
        img = pipeline.flip(img, params.flip)
        img = pipeline.scale_proportionally(img, params.width, params.height, params.kernel)
        try:
            return pipeline.encode(img, output, params.quality)
        except pipeline.EncodeError as exc:
            raise TransformFailed(str(exc)) from exc

    def warm_permanent(self, image: Image, prepared) -> List[str]:
        """Render missing permanent transforms from an already prepared image."""
        metadata = image.metadata_record
        if metadata is None or not metadata.checksum:
            return []
        generated = []
        for name, params in PERMANENT_TRANSFORMS.items():
            output = self.output_for(params, metadata.file_type)
            etag = params.etag(metadata.checksum)
            if self.cache.exists(image.uid, etag, output.extension):
                continue
            self._store(image.uid, etag, output.extension, self.render_image(prepared, params, output))
            generated.append(name)
        return generated

    def purge(self, uid: str) -> int:
        return self.cache.purge(uid)
