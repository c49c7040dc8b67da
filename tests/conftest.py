import asyncio
import os
import tempfile
from pathlib import Path

# Configure the app before it is imported: plain-http cookies, no rate limits,
# and a throwaway default database (tests inject their own session anyway).
_DEFAULT_DB = Path(tempfile.mkdtemp()) / "default.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DEFAULT_DB}"
os.environ["COOKIE_SECURE"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["SITE_URL"] = "https://lists.example.test"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from movielists.database import get_db
from movielists.main import app
from movielists.models import Base


@pytest.fixture()
def session_factory(tmp_path):
    db_path = tmp_path / "test.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # NullPool: every TestClient request runs on its own event loop.
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    yield factory
    app.dependency_overrides.pop(get_db, None)
    asyncio.run(engine.dispose())


@pytest.fixture()
def run_db(session_factory):
    """Run ``fn(session)`` against the test database and return its result."""

    def _run(fn):
        async def _inner():
            async with session_factory() as session:
                return await fn(session)

        return asyncio.run(_inner())

    return _run


@pytest.fixture()
def anon_client(session_factory):
    return TestClient(app)


@pytest.fixture()
def make_user(session_factory):
    """Sign up a fresh user and return a client carrying their session + CSRF header."""
    counter = {"n": 0}

    def _make(name: str | None = None) -> TestClient:
        counter["n"] += 1
        client = TestClient(app)
        email = f"user{counter['n']}@example.com"
        r = client.post(
            "/api/auth/signup",
            json={"email": email, "password": "correct-horse", "name": name},
        )
        assert r.status_code == 200, r.text
        client.headers["X-CSRF-Token"] = client.cookies.get("csrf_token")
        client.user_id = r.json()["id"]
        client.email = email
        return client

    return _make


@pytest.fixture()
def owner(make_user):
    return make_user("Owner")


@pytest.fixture()
def other(make_user):
    return make_user("Other")


def create_list(client, name="Weekend", description=None) -> str:
    r = client.post("/api/lists", json={"name": name, "description": description})
    assert r.status_code == 200, r.text
    return r.json()["id"]


def invite_and_join(owner_client, member_client, list_id, role="viewer") -> str:
    r = owner_client.post(f"/api/lists/{list_id}/invites", json={"role": role})
    assert r.status_code == 200, r.text
    code = r.json()["code"]
    r = member_client.post(f"/api/invites/{code}/accept")
    assert r.status_code == 200, r.text
    return code


def add_movie(client, list_id, tmdb_id=603, title="The Matrix", **extra):
    return client.post(f"/api/lists/{list_id}/movies", json={"tmdb_id": tmdb_id, "title": title, **extra})
