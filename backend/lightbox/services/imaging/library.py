import logging
import threading

from PIL import Image
import pillow_heif

from lightbox.core.config import Settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_started = False


def startup(settings: Settings) -> None:
    """Register extra decoders and apply limits once per process."""
    global _started
    with _lock:
        if _started:
            return
        pillow_heif.register_heif_opener()
        Image.MAX_IMAGE_PIXELS = settings.IMAGE_MAX_PIXELS
        Image.init()
        _started = True
    logger.info(
        "Image library initialized",
        extra={
            "pillow_version": Image.__version__,
            "decoders": len(Image.OPEN),
            "max_pixels": settings.IMAGE_MAX_PIXELS,
        },
    )


def shutdown() -> None:
    global _started
    with _lock:
        if not _started:
            return
        _started = False
    logger.info("Image library shut down")


def is_started() -> bool:
    return _started
