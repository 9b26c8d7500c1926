from __future__ import annotations
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from signal_engine.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if not s.database_url:
        raise RuntimeError("Database configuration required. Please set the DATABASE_URL environment variable.")
    return s.database_url


def _build_engine(url: str):
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


engine = _build_engine(_dsn())
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session_factory():
    """Return the current session factory (honours override_engine)."""
    return SessionLocal


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
