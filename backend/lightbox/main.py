import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import Session

from lightbox.api.endpoints import cache, collections, downloads, events, images, jobs, search
from lightbox.core.config import Settings, settings as default_settings
from lightbox.core.error_handlers import register_error_handlers
from lightbox.core.log_config import configure_logging
from lightbox.db.database import get_session
from lightbox.db.init_db import init_db
from lightbox.services.runtime import Runtime

logger = logging.getLogger(__name__)


def include_routers(app: FastAPI) -> None:
    app.include_router(images.router, prefix="/images", tags=["images"])
    app.include_router(downloads.router, prefix="/download", tags=["downloads"])
    app.include_router(jobs.router, prefix="/admin/jobs", tags=["jobs"])
    app.include_router(cache.router, prefix="/admin/cache", tags=["cache"])
    app.include_router(events.router, prefix="/events", tags=["events"])
    app.include_router(collections.router, prefix="/collections", tags=["collections"])
    app.include_router(search.router, prefix="/search", tags=["search"])


def create_app(settings: Settings = default_settings, engine=None) -> FastAPI:
    custom_engine = engine is not None
    if not custom_engine:
        from lightbox.db.engine import engine as default_engine

        engine = default_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        init_db(engine, settings)
        runtime = Runtime(settings, engine)
        runtime.events.loop = asyncio.get_running_loop()
        runtime.start()
        app.state.runtime = runtime
        try:
            yield
        finally:
            runtime.stop()
            app.state.runtime = None

    app = FastAPI(title=f"{settings.PROJECT_NAME} API", version=settings.APP_VERSION, lifespan=lifespan)
    register_error_handlers(app)
    include_routers(app)
    if custom_engine:
        def session_for_engine():
            with Session(engine) as session:
                yield session

        app.dependency_overrides[get_session] = session_for_engine

    @app.get("/")
    def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME}", "version": settings.APP_VERSION}

    return app


app = create_app()
