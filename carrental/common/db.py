"""Database bootstrap helpers shared by all services."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from carrental.common.config import settings


def build_engine(url: str, **kwargs):
    """Create an engine; SQLite connections are shared across threadpool workers."""

    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


# Single SQLAlchemy engine per process.
engine = build_engine(settings.database_url)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def init_db(bind=None) -> None:
    """Create all registered tables that do not exist yet."""

    Base.metadata.create_all(bind=bind or engine)
