import io
import sys
from pathlib import Path
from typing import Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR))

import piexif
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from PIL import Image as PILImage
from sqlmodel import Session, SQLModel

from lightbox.core.config import Settings
from lightbox.core.error_handlers import register_error_handlers
from lightbox.db.database import get_session
from lightbox.db.engine import build_engine
from lightbox.main import include_routers
from lightbox.services.imaging import library
from lightbox.services.runtime import Runtime

USER_HEADERS = {"X-Principal-Uid": "user-1", "X-Principal-Role": "user"}
OTHER_HEADERS = {"X-Principal-Uid": "user-2", "X-Principal-Role": "user"}
ADMIN_HEADERS = {"X-Principal-Uid": "admin-1", "X-Principal-Role": "admin"}


@pytest.fixture()
def settings(tmp_path):
    settings = Settings(
        ROOT_DIR=tmp_path / "lightbox",
        JOB_RETRY_INITIAL_INTERVAL_S=0.01,
        JOB_RECOVER_ON_START=False,
        TRANSFORM_CACHE_GC_ENABLED=False,
        EVENT_PING_INTERVAL_S=1.0,
    )
    settings.ensure_dirs()
    library.startup(settings)
    return settings


@pytest.fixture()
def engine(tmp_path, settings):
    # File-backed so worker threads each get their own connection
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def runtime(settings, engine):
    runtime = Runtime(settings, engine)
    yield runtime
    runtime.stop()
    runtime.pool.stop()


@pytest.fixture()
def client(engine, runtime):
    app = FastAPI()
    register_error_handlers(app)
    include_routers(app)
    app.state.runtime = runtime

    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    return TestClient(app)


def jpeg_bytes(
    width: int = 64,
    height: int = 48,
    color=(200, 60, 30),
    date_time_original: Optional[str] = None,
    make: Optional[str] = None,
    mode: str = "RGB",
) -> bytes:
    img = PILImage.new(mode, (width, height), color)
    buf = io.BytesIO()
    params = {"quality": 90}
    if date_time_original or make:
        zeroth = {}
        exif_ifd = {}
        if make:
            zeroth[piexif.ImageIFD.Make] = make.encode("ascii")
            zeroth[piexif.ImageIFD.Model] = b"Model One"
        if date_time_original:
            exif_ifd[piexif.ExifIFD.DateTimeOriginal] = date_time_original.encode("ascii")
        params["exif"] = piexif.dump({"0th": zeroth, "Exif": exif_ifd, "GPS": {}, "1st": {}, "thumbnail": None})
    img.save(buf, format="JPEG", **params)
    return buf.getvalue()


def png_bytes(width: int = 32, height: int = 32, color=(0, 128, 255, 128)) -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def make_jpeg():
    return jpeg_bytes


@pytest.fixture()
def make_png():
    return png_bytes


@pytest.fixture()
def create_image(runtime):
    """Store an image directly, without queuing processing jobs."""

    def _create(data: Optional[bytes] = None, filename: str = "photo.jpg", owner_uid: str = "user-1", **kwargs):
        return runtime.assets.create(data or jpeg_bytes(), filename, owner_uid, **kwargs)

    return _create


@pytest.fixture()
def run_job(runtime):
    """Enqueue one job and push it through the worker wrapper synchronously."""

    def _run(topic: str, image_uid: str):
        job_uid = runtime.bus.enqueue(topic, {"image_uid": image_uid}, command="single", image_uid=image_uid)
        message = runtime.broker.next(topic, timeout=1.0)
        assert message is not None and message.uuid == job_uid
        status = runtime.pool.process(runtime.pool.worker_for(topic), message)
        return job_uid, status

    return _run
