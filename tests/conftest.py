"""
Pytest configuration and shared fixtures.

Environment variables are set here before any marketchat import so the
cached settings pick up the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_marketchat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from marketchat.config import get_settings
get_settings.cache_clear()

from marketchat.main import app
from marketchat.models import User, Vendor
from marketchat.storage import Base, SessionLocal, engine


@pytest.fixture(scope="function")
def db():
    """Fresh schema and an open session for service-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def directory(db):
    """
    Seed the identity directory.

    Buyers: b1 (Alice), b2 (no profile name)
    Vendors: v1 (Acme, operated by user u-v1), v2 (no company name)
    """
    db.add_all([
        User(id="b1", full_name="Alice", avatar_url="https://cdn.example/alice.png"),
        User(id="b2", full_name=None, avatar_url=None),
        Vendor(id="v1", user_id="u-v1", company_name="Acme Catering", logo_url="https://cdn.example/acme.png"),
        Vendor(id="v2", user_id="u-v2", company_name=None, logo_url=None),
    ])
    db.commit()
    return db


@pytest.fixture(scope="function")
def client(directory):
    """Test client sharing the seeded database."""
    with TestClient(app) as test_client:
        yield test_client
