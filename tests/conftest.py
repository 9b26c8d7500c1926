import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from signal_engine.config import reset_settings
from signal_engine.infrastructure import db
from signal_engine.infrastructure.db import Base
from signal_engine.models.tables import EnrichmentEvent
import signal_engine.models.tables  # noqa: F401

T0 = 1_729_872_000_000  # aligned to a 60m boundary


def new_engine():
    e = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(e)
    return e


@pytest.fixture(autouse=True)
def engine():
    reset_settings()
    e = new_engine()
    db.override_engine(e)
    yield e
    Base.metadata.drop_all(e)
    e.dispose()
    reset_settings()


@pytest.fixture
def session(engine):
    s = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield s
    s.close()


@pytest.fixture
def make_event():
    """Transient (unsaved) event for the pure aggregation functions."""
    def _make(kind="post_enriched", at=T0, session_id="S", **fields):
        return EnrichmentEvent(kind=kind, at=at, session_id=session_id, **fields)
    return _make
