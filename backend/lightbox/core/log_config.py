import logging

from lightbox.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Pillow and its plugins log under these names
IMAGE_LIBRARY_LOGGERS = ("PIL", "pillow_heif", "rawpy")


def configure_logging(settings: Settings) -> None:
    """Set the root handler and route image library logs through it at the mapped level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(settings.LOG_LEVEL)

    library_level = logging.getLevelName(settings.IMAGE_LIBRARY_LOG_LEVEL)
    if not isinstance(library_level, int):
        library_level = logging.WARNING
    for name in IMAGE_LIBRARY_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.setLevel(library_level)
        library_logger.propagate = True
