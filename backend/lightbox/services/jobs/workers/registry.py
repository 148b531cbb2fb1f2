"""Admin job types, their topics and the handlers behind them."""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from lightbox.core.errors import InputInvalid
from lightbox.models.image import Image
from lightbox.services.asset_store import AssetStore
from lightbox.services.jobs.bus import JobBus
from lightbox.services.jobs.worker_pool import Worker
from lightbox.services.jobs.workers import exif_process, image_process, xmp_generation
from lightbox.services.transforms.engine import TransformEngine

logger = logging.getLogger(__name__)

COMMANDS = ("all", "missing", "single")


@dataclass(frozen=True)
class JobType:
    name: str
    topic: str
    display_name: str


JOB_TYPES: Dict[str, JobType] = {
    "thumbnailGeneration": JobType("thumbnailGeneration", image_process.TOPIC, "Thumbnail generation"),
    "exifProcessing": JobType("exifProcessing", exif_process.TOPIC, "EXIF processing"),
    "xmpGeneration": JobType("xmpGeneration", xmp_generation.TOPIC, "XMP sidecar generation"),
}


def job_type(name: str) -> JobType:
    try:
        return JOB_TYPES[name]
    except KeyError:
        raise InputInvalid(f"unknown job type: {name}") from None


def job_type_for_topic(topic: str) -> Optional[JobType]:
    for entry in JOB_TYPES.values():
        if entry.topic == topic:
            return entry
    return None


def build_workers(assets: AssetStore, transforms: TransformEngine) -> List[Worker]:
    handlers = {
        image_process.TOPIC: image_process.ImageProcessHandler(assets, transforms),
        exif_process.TOPIC: exif_process.ExifProcessHandler(assets),
        xmp_generation.TOPIC: xmp_generation.XmpGenerationHandler(assets),
    }
    return [
        Worker(name=entry.name, topic=entry.topic, display_name=entry.display_name, handler=handlers[entry.topic])
        for entry in JOB_TYPES.values()
    ]


def image_payload(image_uid: str) -> dict:
    return {"image_uid": image_uid}


def enqueue_for_images(
    bus: JobBus,
    assets: AssetStore,
    entry: JobType,
    handler: Callable,
    command: str,
    image_uid: Optional[str] = None,
) -> List[str]:
    """Enqueue one job per selected image; returns the job uids."""
    if command not in COMMANDS:
        raise InputInvalid(f"command must be one of: {', '.join(COMMANDS)}")

    if command == "single":
        if not image_uid:
            raise InputInvalid("image_uid is required for command=single")
        targets: List[Image] = [assets.read_metadata(image_uid)]
    else:
        targets = assets.live_images()
        if command == "missing":
            needs_work = getattr(handler, "needs_work", None)
            if needs_work is not None:
                targets = [image for image in targets if needs_work(image)]

    uids = [
        bus.enqueue(entry.topic, image_payload(image.uid), command=command, image_uid=image.uid)
        for image in targets
    ]
    logger.info(
        "Jobs enqueued",
        extra={"type": entry.name, "topic": entry.topic, "command": command, "count": len(uids)},
    )
    return uids
