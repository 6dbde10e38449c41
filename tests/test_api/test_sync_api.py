"""Sync API integration tests: push, pull, digest over HTTP."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from backend.config import Settings
from tests.conftest import TEST_SECRET_KEY, create_test_client, login_headers

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from httpx import AsyncClient

T100 = "2024-01-01T00:00:00.100Z"
T200 = "2024-01-01T00:00:00.200Z"


def _task(entity_id: str, data: dict[str, Any], updated_at: str = T100) -> dict[str, Any]:
    return {"entity": "Task", "op": "upsert", "id": entity_id, "data": data, "updatedAt": updated_at}


class TestSyncAuth:
    @pytest.mark.asyncio
    async def test_push_requires_auth(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/sync/push", json={"mutations": []}, headers={"X-Device-Id": "dev-a"}
        )
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_pull_requires_auth(self, client: AsyncClient) -> None:
        resp = await client.get("/sync/pull")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token_is_rejected(self, client: AsyncClient) -> None:
        resp = await client.get("/sync/digest", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_push_requires_device_id(self, client: AsyncClient) -> None:
        headers = await login_headers(client, device_id=None)
        resp = await client.post("/sync/push", json={"mutations": []}, headers=headers)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize("device_id", ["has space", "bad/slash", "x" * 65])
    async def test_push_rejects_bad_device_id(self, client: AsyncClient, device_id: str) -> None:
        headers = await login_headers(client, device_id=device_id)
        resp = await client.post("/sync/push", json={"mutations": []}, headers=headers)
        assert resp.status_code == 422


class TestPushPull:
    @pytest.mark.asyncio
    async def test_push_then_pull(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        resp = await client.post(
            "/sync/push",
            json={"mutations": [_task("t1", {"title": "Hello", "priority": 2})]},
            headers=headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body == {
            "ok": True,
            "results": [{"id": "t1", "applied": True, "resultingUpdatedAt": T100}],
        }

        resp = await client.get("/sync/pull", headers=headers)
        assert resp.status_code == 200
        page = resp.json()
        assert page["hasMore"] is False
        assert page["mutations"] == [
            {
                "entity": "Task",
                "op": "upsert",
                "id": "t1",
                "data": {"title": "Hello", "priority": 2, "deletedAt": None},
                "updatedAt": T100,
                "originDevice": "dev-test",
            }
        ]

        resp = await client.get("/sync/pull", params={"since": page["cursor"]}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["mutations"] == []
        assert resp.json()["cursor"] == page["cursor"]

    @pytest.mark.asyncio
    async def test_rejection_carries_reason(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        resp = await client.post(
            "/sync/push",
            json={"mutations": [_task("t1", {"bogus": 1}), _task("t2", {"title": "ok"})]},
            headers=headers,
        )
        assert resp.status_code == 200
        first, second = resp.json()["results"]
        assert first["applied"] is False
        assert "Invalid Task fields" in first["reason"]
        assert "resultingUpdatedAt" not in first
        assert second["applied"] is True

    @pytest.mark.asyncio
    async def test_duplicate_push_does_not_grow_feed(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        batch = {"mutations": [_task("t1", {"title": "a"})]}
        first = await client.post("/sync/push", json=batch, headers=headers)
        second = await client.post("/sync/push", json=batch, headers=headers)

        assert first.json()["results"][0]["applied"] is True
        assert second.json()["results"][0]["applied"] is True
        resp = await client.get("/sync/pull", headers=headers)
        assert len(resp.json()["mutations"]) == 1

    @pytest.mark.asyncio
    async def test_bad_cursor_returns_409(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        resp = await client.get("/sync/pull", params={"since": "nope:7"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json() == {"detail": "cursor_divergence"}

    @pytest.mark.asyncio
    async def test_malformed_body_returns_422(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        resp = await client.post("/sync/push", json={"mutations": "x"}, headers=headers)
        assert resp.status_code == 422
        assert resp.json()["detail"][0]["field"] == "mutations"

    @pytest.mark.asyncio
    async def test_other_users_entity_is_forbidden(self, client: AsyncClient) -> None:
        admin = await login_headers(client)
        await client.post("/sync/push", json={"mutations": [_task("t1", {"title": "a"})]}, headers=admin)

        resp = await client.post(
            "/api/auth/register",
            json={"username": "mallory", "password": "correcthorse"},
        )
        assert resp.status_code == 201
        mallory = await login_headers(client, "mallory", "correcthorse", device_id="dev-m")
        resp = await client.post(
            "/sync/push",
            json={"mutations": [_task("t1", {"title": "mine now"}, T200)]},
            headers=mallory,
        )
        assert resp.json()["results"][0] == {"id": "t1", "applied": False, "reason": "forbidden"}

        resp = await client.get("/sync/pull", headers=mallory)
        assert resp.json()["mutations"] == []


class TestDigest:
    @pytest.mark.asyncio
    async def test_digest_tracks_cursor(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        before = (await client.get("/sync/digest", headers=headers)).json()
        await client.post("/sync/push", json={"mutations": [_task("t1", {"title": "a"})]}, headers=headers)
        after = (await client.get("/sync/digest", headers=headers)).json()
        pulled = (await client.get("/sync/pull", headers=headers)).json()

        assert len(after["digests"]) == 8
        assert after["digests"]["Task"] != before["digests"]["Task"]
        assert after["digests"]["Project"] == before["digests"]["Project"]
        assert after["cursor"] == pulled["cursor"]


class TestLimits:
    @pytest.fixture
    def app_settings(self, tmp_path: Path) -> Settings:
        db_path = tmp_path / "limits.db"
        return Settings(
            secret_key=TEST_SECRET_KEY,
            debug=True,
            database_url=f"sqlite+aiosqlite:///{db_path}",
            admin_username="admin",
            admin_password="admin123",
            sync_max_push_batch=2,
            sync_pull_page_size=2,
        )

    @pytest.fixture
    async def limited_client(self, app_settings: Settings) -> AsyncGenerator[AsyncClient]:
        async with create_test_client(app_settings) as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_oversized_batch_returns_413(self, limited_client: AsyncClient) -> None:
        headers = await login_headers(limited_client)
        batch = {"mutations": [_task(f"t{i}", {"title": str(i)}) for i in range(3)]}
        resp = await limited_client.post("/sync/push", json=batch, headers=headers)
        assert resp.status_code == 413

    @pytest.mark.asyncio
    async def test_pull_pages(self, limited_client: AsyncClient) -> None:
        headers = await login_headers(limited_client)
        for i in range(3):
            await limited_client.post(
                "/sync/push", json={"mutations": [_task(f"t{i}", {"title": str(i)})]}, headers=headers
            )

        first = (await limited_client.get("/sync/pull", headers=headers)).json()
        assert [m["id"] for m in first["mutations"]] == ["t0", "t1"]
        assert first["hasMore"] is True
        second = (
            await limited_client.get("/sync/pull", params={"since": first["cursor"]}, headers=headers)
        ).json()
        assert [m["id"] for m in second["mutations"]] == ["t2"]
        assert second["hasMore"] is False


class TestAuthAndHealth:
    @pytest.mark.asyncio
    async def test_login_rejects_bad_password(self, client: AsyncClient) -> None:
        resp = await client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_me(self, client: AsyncClient) -> None:
        headers = await login_headers(client)
        resp = await client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["username"] == "admin"
        assert resp.json()["is_admin"] is True

    @pytest.mark.asyncio
    async def test_duplicate_registration_conflicts(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/auth/register", json={"username": "admin", "password": "correcthorse"}
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["database"] == "ok"
        assert resp.json()["version"] == "0.1.0"


class TestRegistrationDisabled:
    @pytest.fixture
    async def closed_client(self, tmp_path: Path) -> AsyncGenerator[AsyncClient]:
        settings = Settings(
            secret_key=TEST_SECRET_KEY,
            debug=True,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'closed.db'}",
            admin_username="admin",
            admin_password="admin123",
            auth_self_registration=False,
        )
        async with create_test_client(settings) as ac:
            yield ac

    @pytest.mark.asyncio
    async def test_register_is_forbidden(self, closed_client: AsyncClient) -> None:
        resp = await closed_client.post(
            "/api/auth/register", json={"username": "newuser", "password": "correcthorse"}
        )
        assert resp.status_code == 403
