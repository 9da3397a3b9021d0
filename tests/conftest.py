"""Shared pytest fixtures for OpenSeries."""

from __future__ import annotations

import dataclasses
import sys
from datetime import date, time
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from openseries import (
    api,
    config,
    crud,
    database,
    materializer,
    storage,
    subscriptions,
    sweep,
)
from openseries.models import Base


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    sweep.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def override_settings(monkeypatch):
    """Swap in a modified settings object for modules that read it at call time."""

    def apply(**overrides):
        patched = dataclasses.replace(config.settings, **overrides)
        for module in (config, crud, materializer, subscriptions, sweep, api):
            monkeypatch.setattr(module, "settings", patched)
        return patched

    return apply


@pytest.fixture()
def db_session():
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def make_series(db_session):
    """Create a committed weekly Monday 18:00 series, overridable per test."""

    def factory(**overrides):
        values = {
            "owner_id": "owner-1",
            "title": "Monday Run Club",
            "rule": "FREQ=WEEKLY;BYDAY=MO",
            "anchor_date": date(2025, 1, 6),
            "start_time": time(18, 0),
            "duration_minutes": 90,
        }
        values.update(overrides)
        series = crud.create_series(db_session, **values)
        db_session.commit()
        return series

    return factory
