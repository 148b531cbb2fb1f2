import logging

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from lightbox.core.config import Settings
# Import models so they are registered with SQLModel.metadata
from lightbox.models.image import Image  # noqa: F401
from lightbox.models.collection import Collection  # noqa: F401
from lightbox.models.job import WorkerJob  # noqa: F401
from lightbox.models.download_token import DownloadToken  # noqa: F401

logger = logging.getLogger(__name__)


def init_db(engine: Engine, settings: Settings) -> None:
    settings.ensure_dirs()
    SQLModel.metadata.create_all(engine)
    logger.info("Database initialized", extra={"url": str(engine.url)})
