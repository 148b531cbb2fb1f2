from sqlmodel import create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from lightbox.core.config import settings


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)

    # check_same_thread=False lets request handlers and job workers share
    # the SQLite file; NullPool closes connections instead of hoarding them.
    sqlite_engine = create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 5.0},
        poolclass=NullPool,
    )

    @event.listens_for(sqlite_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    return sqlite_engine


engine = build_engine(settings.database_url)
