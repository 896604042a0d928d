"""
Pytest configuration and shared fixtures.

Test defaults are put in the environment before any wavehub import so the
module-level settings, engine and app pick them up. Values already present
in the environment (e.g. from a Makefile or CI) take precedence.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wavehub.db")
os.environ.setdefault("JWT_SECRET", "test-secret-for-wavehub")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WS_AUTH_TIMEOUT", "5")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Clear settings cache before any app imports to ensure test env vars are used
from wavehub.config import get_settings
get_settings.cache_clear()

from wavehub.auth import TokenVerifier
from wavehub.hub import SignalingHub
from wavehub.storage import Base, init_db

from helpers import TEST_JWT_SECRET, FixedClock, seed_database


@pytest.fixture
def db_engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    seed_database(factory)
    return factory


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def hub(session_factory, clock) -> SignalingHub:
    return SignalingHub(
        session_factory=session_factory,
        verifier=TokenVerifier(TEST_JWT_SECRET),
        clock=clock,
    )
