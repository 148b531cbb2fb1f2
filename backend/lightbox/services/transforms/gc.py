"""Background garbage collection of the transform cache.

Files older than the age limit go first; if the cache is still above the size
limit the oldest remaining files are evicted until it fits. Permanent
transforms of live images are kept unless the config says to clear them.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from lightbox.core.clock import as_utc, utcnow
from lightbox.core.config import Settings
from lightbox.services.asset_store import AssetStore
from lightbox.services.transforms.cache import TransformCache
from lightbox.services.transforms.permanent import permanent_cache_keys

logger = logging.getLogger(__name__)


@dataclass
class GCResult:
    scanned: int = 0
    removed_expired: int = 0
    removed_oversize: int = 0
    bytes_removed: int = 0
    bytes_remaining: int = 0
    preserved: int = 0

    @property
    def removed(self) -> int:
        return self.removed_expired + self.removed_oversize

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "removed": self.removed,
            "removed_expired": self.removed_expired,
            "removed_oversize": self.removed_oversize,
            "bytes_removed": self.bytes_removed,
            "bytes_remaining": self.bytes_remaining,
            "preserved": self.preserved,
        }


class TransformCacheGC:
    def __init__(
        self,
        assets: AssetStore,
        cache: TransformCache,
        settings: Settings,
        also_run: Sequence[Callable[[], object]] = (),
    ):
        self.assets = assets
        self.cache = cache
        self.settings = settings
        # Extra housekeeping run on every tick, e.g. expired token sweeps
        self.also_run = list(also_run)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._collect_lock = threading.Lock()

    def _preserved_keys(self) -> set:
        if self.settings.TRANSFORM_CACHE_CLEAR_PERMANENT:
            return set()
        checksums = []
        for image in self.assets.live_images():
            metadata = image.metadata_record
            if metadata is not None and metadata.checksum:
                checksums.append(metadata.checksum)
        return permanent_cache_keys(checksums)

    def collect(self, now: Optional[datetime] = None) -> GCResult:
        with self._collect_lock:
            return self._collect(as_utc(now) if now else utcnow())

    def _collect(self, now: datetime) -> GCResult:
        result = GCResult()
        preserved = self._preserved_keys()
        max_age_s = self.settings.TRANSFORM_CACHE_MAX_AGE_DAYS * 86400
        cutoff = now.timestamp() - max_age_s if max_age_s > 0 else None

        candidates: List[tuple] = []
        for path, stat in self.cache.iter_files():
            result.scanned += 1
            if path.stem in preserved:
                result.preserved += 1
                continue
            if cutoff is not None and stat.st_mtime < cutoff:
                if self._remove(path):
                    result.removed_expired += 1
                    result.bytes_removed += stat.st_size
                continue
            candidates.append((stat.st_mtime, stat.st_size, path))

        total = sum(size for _, size, _ in candidates)
        limit = self.settings.TRANSFORM_CACHE_MAX_SIZE_BYTES
        if limit > 0 and total > limit:
            candidates.sort(key=lambda item: item[0])
            for _, size, path in candidates:
                if total <= limit:
                    break
                if self._remove(path):
                    result.removed_oversize += 1
                    result.bytes_removed += size
                    total -= size
        result.bytes_remaining = total

        logger.info("Transform cache GC finished", extra=result.to_dict())
        return result

    @staticmethod
    def _remove(path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Failed to remove cached transform", extra={"path": str(path), "error": str(exc)})
            return False

    def tick(self) -> None:
        try:
            self.collect()
        except Exception:
            logger.exception("Transform cache GC failed")
        for task in self.also_run:
            try:
                task()
            except Exception:
                logger.exception("Housekeeping task failed", extra={"task": getattr(task, "__name__", repr(task))})

    def _loop(self) -> None:
        interval = max(1, self.settings.TRANSFORM_CACHE_GC_INTERVAL_MINUTES) * 60
        while not self._stop.wait(interval):
            self.tick()

    def start(self) -> None:
        if not self.settings.TRANSFORM_CACHE_GC_ENABLED or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="transform-cache-gc", daemon=True)
        self._thread.start()
        logger.info(
            "Transform cache GC scheduled",
            extra={"interval_minutes": self.settings.TRANSFORM_CACHE_GC_INTERVAL_MINUTES},
        )

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
