from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from .config import get_settings

settings = get_settings()
engine_url = settings.database_url
engine_kwargs = {}
if engine_url.startswith("sqlite"):
    engine_kwargs["connect_args"] = {
        "check_same_thread": False,
        "timeout": settings.store_timeout_seconds,
    }
    # An in-memory database only lives as long as its single connection.
    if engine_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool
elif engine_url.startswith("postgresql"):
    engine_kwargs["connect_args"] = {
        "connect_timeout": settings.store_timeout_seconds,
        "options": f"-c statement_timeout={settings.store_timeout_seconds * 1000}",
    }
    engine_kwargs["pool_pre_ping"] = True
    engine_kwargs["pool_timeout"] = settings.store_timeout_seconds

engine = create_engine(engine_url, echo=False, **engine_kwargs)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for work done outside a request, such as dashboard snapshots."""
    with Session(engine) as session:
        yield session
