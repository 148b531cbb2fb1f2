"""The long-lived service object behind the API.

One ``Runtime`` owns every piece of shared mutable state (event history,
job bookkeeping, worker threads, cache GC) and starts and stops them in
order. The FastAPI lifespan creates it; tests build their own.
"""

import logging
from typing import Optional

from sqlalchemy.engine import Engine

from lightbox.core.config import Settings
from lightbox.core.websockets import EventBroker
from lightbox.services.asset_store import AssetStore
from lightbox.services.downloads import DownloadService
from lightbox.services.imaging import library
from lightbox.services.jobs.broker import InProcessBroker
from lightbox.services.jobs.bus import JobBus
from lightbox.services.jobs.worker_pool import RetryPolicy, WorkerPool
from lightbox.services.jobs.workers import registry
from lightbox.services.transforms.cache import TransformCache
from lightbox.services.transforms.engine import TransformEngine
from lightbox.services.transforms.gc import TransformCacheGC

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, settings: Settings, engine: Engine, events: Optional[EventBroker] = None):
        self.settings = settings
        self.engine = engine
        self.events = events or EventBroker(
            history_size=settings.EVENT_HISTORY_SIZE,
            client_buffer=settings.EVENT_CLIENT_BUFFER,
        )
        self.assets = AssetStore(engine, settings)
        self.cache = TransformCache(self.assets)
        self.transforms = TransformEngine(self.assets, self.cache)
        self.downloads = DownloadService(engine, self.assets, settings)

        self.broker = InProcessBroker()
        self.bus = JobBus(engine, self.broker, default_concurrency=settings.JOB_DEFAULT_CONCURRENCY)
        self.pool = WorkerPool(
            self.bus,
            self.events,
            RetryPolicy(
                max_attempts=settings.JOB_MAX_ATTEMPTS,
                initial_interval=settings.JOB_RETRY_INITIAL_INTERVAL_S,
                multiplier=settings.JOB_RETRY_MULTIPLIER,
            ),
            max_threads=settings.JOB_WORKER_THREADS,
        )
        self.pool.register(*registry.build_workers(self.assets, self.transforms))

        self.gc = TransformCacheGC(self.assets, self.cache, settings, also_run=[self.downloads.purge_expired])
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return
        library.startup(self.settings)
        self.settings.ensure_dirs()
        if self.settings.JOB_RECOVER_ON_START:
            self.bus.recover()
        self.pool.start()
        self.gc.start()
        self._started = True
        logger.info("Runtime started", extra={"root_dir": str(self.settings.ROOT_DIR)})

    def stop(self) -> None:
        if not self._started:
            return
        self.gc.stop()
        self.pool.stop()
        self.broker.close()
        library.shutdown()
        self._started = False
        logger.info("Runtime stopped")

    # Convenience used by the upload paths

    def enqueue_processing(self, image_uid: str) -> list:
        """Queue the jobs every new image gets."""
        payload = registry.image_payload(image_uid)
        return [
            self.bus.enqueue(registry.JOB_TYPES[name].topic, payload, command="single", image_uid=image_uid)
            for name in ("thumbnailGeneration", "exifProcessing", "xmpGeneration")
        ]

    def handler_for(self, job_type: registry.JobType):
        worker = self.pool.worker_for(job_type.topic)
        return worker.handler if worker is not None else None
