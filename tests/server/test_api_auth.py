"""Integration tests for login and token authentication."""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.auth import audit
from nebi.server.db.tables import User

pytestmark = pytest.mark.integration


async def test_login_and_me(client: AsyncClient, alice: User, db_session: AsyncSession) -> None:
    resp = await client.post("/api/auth/login", json={"username": "alice", "password": "alice-password"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["id"] == alice.id
    assert body["user"]["is_admin"] is False
    assert "password_hash" not in body["user"]

    resp = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert resp.status_code == 200
    assert resp.json()["username"] == "alice"

    entries = await audit.list_entries(db_session, user_id=alice.id, action="login")
    assert len(entries) == 1


async def test_login_wrong_password(client: AsyncClient, alice: User, db_session: AsyncSession) -> None:
    resp = await client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid username or password"}

    resp = await client.post("/api/auth/login", json={"username": "ghost", "password": "nope"})
    assert resp.status_code == 401

    failures = await audit.list_entries(db_session, action="login_failed")
    assert sorted(e.details["username"] for e in failures) == ["alice", "ghost"]


async def test_missing_token(client: AsyncClient) -> None:
    resp = await client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.headers["www-authenticate"] == "Bearer"


async def test_invalid_token(client: AsyncClient) -> None:
    resp = await client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid token"}


async def test_token_query_parameter(client: AsyncClient, alice: User, auth_headers) -> None:
    token = auth_headers(alice)["Authorization"].removeprefix("Bearer ")
    resp = await client.get("/api/auth/me", params={"token": token})
    assert resp.status_code == 200


async def test_token_for_deleted_user(
    client: AsyncClient, alice: User, auth_headers, db_session: AsyncSession
) -> None:
    headers = auth_headers(alice)
    await db_session.delete(alice)
    await db_session.commit()

    resp = await client.get("/api/auth/me", headers=headers)
    assert resp.status_code == 401
