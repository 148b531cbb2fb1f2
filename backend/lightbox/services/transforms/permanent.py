import hashlib
from typing import Dict, Iterable, Set

from lightbox.models.image import Image, ImagePaths
from lightbox.services.transforms.params import TransformParams

PERMANENT_TRANSFORMS: Dict[str, TransformParams] = {
    "thumbnail": TransformParams(format="webp", width=400, height=400, quality=85),
    "preview": TransformParams(format="webp", width=1920, height=1920, quality=90),
}


def cache_key(etag: str) -> str:
    return hashlib.sha1(etag.encode("utf-8")).hexdigest()


def permanent_cache_keys(checksums: Iterable[str]) -> Set[str]:
    keys: Set[str] = set()
    for checksum in checksums:
        if not checksum:
            continue
        for params in PERMANENT_TRANSFORMS.values():
            keys.add(cache_key(params.etag(checksum)))
    return keys


def file_url(uid: str, params: TransformParams = None) -> str:
    url = f"/images/{uid}/file"
    query = params.query() if params is not None else ""
    return f"{url}?{query}" if query else url


def image_paths(image: Image) -> ImagePaths:
    return ImagePaths(
        original=file_url(image.uid),
        thumbnail=file_url(image.uid, PERMANENT_TRANSFORMS["thumbnail"]),
        preview=file_url(image.uid, PERMANENT_TRANSFORMS["preview"]),
    )
