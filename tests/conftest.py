"""Shared test fixtures for TaskSync."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.main import create_app
from backend.models.base import Base

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin123"


@asynccontextmanager
async def create_test_app(settings: Settings) -> AsyncGenerator[FastAPI]:
    """Create a fully initialized app.

    Manually performs the work of the application lifespan (DB schema, feed
    epoch, admin user) because ASGITransport does not trigger it.
    """
    from backend.database import create_engine as create_db_engine
    from backend.services.auth_service import ensure_admin_user
    from backend.services.sync_service import ensure_server_epoch

    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as session:
        await ensure_server_epoch(session)
        await ensure_admin_user(session, settings)

    yield app

    await engine.dispose()


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app."""
    async with (
        create_test_app(settings) as app,
        AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac,
    ):
        yield ac


async def login_headers(
    client: AsyncClient,
    username: str = ADMIN_USERNAME,
    password: str = ADMIN_PASSWORD,
    device_id: str | None = "dev-test",
) -> dict[str, str]:
    """Log in and return request headers carrying the bearer token and device id."""
    resp = await client.post(
        "/api/auth/login", json={"username": username, "password": password}
    )
    assert resp.status_code == 200, resp.text
    headers = {"Authorization": f"Bearer {resp.json()['access_token']}"}
    if device_id is not None:
        headers["X-Device-Id"] = device_id
    return headers


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        auth_self_registration=True,
    )


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    """HTTP client bound to an initialized in-process app."""
    async with create_test_client(test_settings) as ac:
        yield ac


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(
    db_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
