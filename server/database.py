"""Database connection and initialization."""

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from server.config import Settings

# Import all models so SQLModel registers them
import server.models  # noqa: F401


def make_engine(settings: Settings) -> Engine:
    """Build the engine for the configured database."""
    url = settings.sqlalchemy_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=settings.debug, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create all tables and enable WAL mode on SQLite."""
    SQLModel.metadata.create_all(engine)

    if engine.dialect.name != "sqlite":
        return

    # Enable WAL mode for better concurrent read performance
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        conn.exec_driver_sql("PRAGMA synchronous=NORMAL")
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")
        conn.commit()


def get_session(request: Request):
    """FastAPI dependency: yields a database session bound to the app's engine."""
    with Session(request.app.state.engine) as session:
        yield session


def get_settings(request: Request) -> Settings:
    """FastAPI dependency: the settings the app was created with."""
    return request.app.state.settings
