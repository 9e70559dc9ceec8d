"""
Engine, session factory and declarative base.

Route handlers receive a session per request through ``get_db``; the worker
and tests build their own sessions from ``SessionLocal`` or ``build_engine``.
"""
from typing import Generator
from urllib.parse import urlparse

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from servio.config import settings

SUPPORTED_SCHEMES = ("postgresql", "sqlite")


def build_engine(url: str, echo: bool = False) -> Engine:
    url = (url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Please set a valid Postgres URL.")

    scheme = urlparse(url).scheme
    if not scheme.startswith(SUPPORTED_SCHEMES):
        raise RuntimeError(
            f"Unsupported DATABASE_URL scheme '{scheme}'. Only Postgres (or SQLite for tests) is supported."
        )

    kwargs = {"echo": echo, "pool_pre_ping": True}
    if scheme.startswith("sqlite"):
        # Sessions cross the threadpool boundary in FastAPI
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_recycle"] = 300
    return create_engine(url, **kwargs)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
