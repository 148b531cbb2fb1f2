import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

from lightbox.services.asset_store import TRANSFORMS_DIRNAME, AssetStore, atomic_write
from lightbox.services.transforms.permanent import cache_key

logger = logging.getLogger(__name__)

TEMP_PREFIX = "tmp-transform-"


class TransformCache:
    """Content-addressed files under ``<image-dir>/transforms/<sha1(etag)>.<ext>``."""

    def __init__(self, assets: AssetStore):
        self.assets = assets

    def path(self, uid: str, etag: str, extension: str) -> Path:
        return self.assets.transforms_dir(uid) / f"{cache_key(etag)}.{extension}"

    def read(self, uid: str, etag: str, extension: str) -> Optional[bytes]:
        try:
            return self.path(uid, etag, extension).read_bytes()
        except FileNotFoundError:
            return None

    def exists(self, uid: str, etag: str, extension: str) -> bool:
        return self.path(uid, etag, extension).is_file()

    def write(self, uid: str, etag: str, extension: str, data: bytes) -> Path:
        path = self.path(uid, etag, extension)
        atomic_write(path, data, prefix=TEMP_PREFIX)
        return path

    def purge(self, uid: str) -> int:
        directory = self.assets.transforms_dir(uid)
        if not directory.exists():
            return 0
        count = sum(1 for entry in directory.iterdir() if entry.is_file())
        shutil.rmtree(directory)
        logger.info("Purged transform cache", extra={"uid": uid, "files": count})
        return count

    def iter_files(self) -> Iterator[Tuple[Path, os.stat_result]]:
        """Every cached transform in the library, skipping in-flight temp files."""
        library = self.assets.settings.library_dir
        if not library.exists():
            return
        for image_dir in library.iterdir():
            transforms = image_dir / TRANSFORMS_DIRNAME
            if not transforms.is_dir():
                continue
            for entry in transforms.iterdir():
                if entry.name.startswith(TEMP_PREFIX):
                    continue
                try:
                    stat = entry.stat()
                except OSError:
                    continue
                if entry.is_file():
                    yield entry, stat

    def status(self) -> Dict[str, int]:
        files = 0
        total = 0
        images = set()
        for path, stat in self.iter_files():
            files += 1
            total += stat.st_size
            images.add(path.parent.parent.name)
        return {"files": files, "bytes": total, "images": len(images)}

    def clear(self) -> Dict[str, int]:
        status = self.status()
        library = self.assets.settings.library_dir
        if library.exists():
            for image_dir in library.iterdir():
                transforms = image_dir / TRANSFORMS_DIRNAME
                if transforms.is_dir():
                    shutil.rmtree(transforms, ignore_errors=True)
        logger.info("Cleared transform cache", extra=status)
        return status
