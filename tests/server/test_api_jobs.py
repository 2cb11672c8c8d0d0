"""Integration tests for job listing and lookup.

Live streaming is exercised against a real worker in ``test_worker.py``.
"""

from __future__ import annotations

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from nebi.server.db.tables import User
from nebi.server.managers import jobs as jobs_mgr
from nebi.server.managers import workspaces as workspaces_mgr
from nebi.server.models.enums import JobStatus

pytestmark = pytest.mark.integration


async def _workspace(client: AsyncClient, headers: dict[str, str], name: str) -> dict:
    resp = await client.post("/api/workspaces", json={"name": name}, headers=headers)
    assert resp.status_code == 202
    return resp.json()


async def test_list_only_visible_jobs(client: AsyncClient, alice: User, bob: User, auth_headers) -> None:
    mine = await _workspace(client, auth_headers(alice), "mine")
    theirs = await _workspace(client, auth_headers(bob), "theirs")

    resp = await client.get("/api/jobs", headers=auth_headers(alice))
    assert resp.status_code == 200
    assert [j["id"] for j in resp.json()] == [mine["job_id"]]

    resp = await client.get("/api/jobs", headers=auth_headers(bob))
    assert [j["id"] for j in resp.json()] == [theirs["job_id"]]


async def test_shared_workspace_jobs_are_visible(
    client: AsyncClient, alice: User, bob: User, auth_headers
) -> None:
    ws = await _workspace(client, auth_headers(alice), "shared")
    resp = await client.post(
        f"/api/workspaces/{ws['id']}/share", json={"user_id": bob.id, "role": "viewer"}, headers=auth_headers(alice)
    )
    assert resp.status_code == 200

    resp = await client.get(f"/api/jobs/{ws['job_id']}", headers=auth_headers(bob))
    assert resp.status_code == 200
    assert resp.json()["workspace_id"] == ws["id"]


async def test_filters(client: AsyncClient, alice: User, auth_headers, db_session: AsyncSession) -> None:
    first = await _workspace(client, auth_headers(alice), "first")
    second = await _workspace(client, auth_headers(alice), "second")
    await jobs_mgr.finish_job(db_session, first["job_id"], JobStatus.COMPLETED, logs="done\n")

    resp = await client.get("/api/jobs", params={"status": "completed"}, headers=auth_headers(alice))
    [job] = resp.json()
    assert job["id"] == first["job_id"]
    assert job["logs"] == "done\n"
    assert job["completed_at"] is not None

    resp = await client.get("/api/jobs", params={"status": "pending"}, headers=auth_headers(alice))
    assert [j["id"] for j in resp.json()] == [second["job_id"]]

    resp = await client.get("/api/jobs", params={"workspace_id": second["id"]}, headers=auth_headers(alice))
    assert [j["id"] for j in resp.json()] == [second["job_id"]]

    resp = await client.get("/api/jobs", params={"limit": 1}, headers=auth_headers(alice))
    assert len(resp.json()) == 1


async def test_jobs_of_deleted_workspace_are_hidden(
    client: AsyncClient, alice: User, auth_headers, db_session: AsyncSession
) -> None:
    ws = await _workspace(client, auth_headers(alice), "gone")
    await workspaces_mgr.soft_delete(db_session, ws["id"])

    resp = await client.get(f"/api/jobs/{ws['job_id']}", headers=auth_headers(alice))
    assert resp.status_code == 404
    resp = await client.get("/api/jobs", headers=auth_headers(alice))
    assert resp.json() == []


async def test_get_and_stream_hidden_job(client: AsyncClient, alice: User, bob: User, auth_headers) -> None:
    ws = await _workspace(client, auth_headers(alice), "private")

    resp = await client.get(f"/api/jobs/{ws['job_id']}", headers=auth_headers(bob))
    assert resp.status_code == 404
    assert resp.json() == {"error": f"Job '{ws['job_id']}' not found."}

    resp = await client.get(f"/api/jobs/{ws['job_id']}/stream", headers=auth_headers(bob))
    assert resp.status_code == 404


async def test_invalid_limit(client: AsyncClient, alice: User, auth_headers) -> None:
    resp = await client.get("/api/jobs", params={"limit": 0}, headers=auth_headers(alice))
    assert resp.status_code == 400
