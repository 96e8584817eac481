"""Shared test fixtures: in-memory database, demo users, tokens and a TestClient."""
import os
import tempfile
from types import SimpleNamespace

# Configure before anything under relay is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="relay-test-logs-")
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient

from relay.core.jwt_auth import create_access_token
from relay.db.base import Base
from relay.db.session import SessionLocal, engine
from relay.main import app
from relay.models.user import User


@pytest.fixture(autouse=True)
def reset_database():
    """Fresh tables for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db, first_name, email, is_admin=False):
    user = User(first_name=first_name, last_name="Tester", email=email, country="NL", is_admin=is_admin)
    db.add(user)
    db.commit()
    return user.id


@pytest.fixture
def users(db):
    """Ids of alice, bob, carol (plain users) and root (platform admin)."""
    return SimpleNamespace(
        alice=make_user(db, "Alice", "alice@example.com"),
        bob=make_user(db, "Bob", "bob@example.com"),
        carol=make_user(db, "Carol", "carol@example.com"),
        root=make_user(db, "Root", "root@example.com", is_admin=True),
    )


def token_for(user_id, role="user", **kwargs):
    return create_access_token(user_id, f"user{user_id}@example.com", role, **kwargs)


def auth(user_id, role="user"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest.fixture
def client():
    """One portal for every request and socket so they share the app's event loop."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def registry():
    return app.state.registry
