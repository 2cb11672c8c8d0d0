"""Unit tests for worker helpers that need no database."""

from __future__ import annotations

import asyncio

import pytest

from nebi.server.worker import JobError, _WorkspaceLocks, packages_from_metadata


@pytest.mark.parametrize(
    ("metadata", "expected"),
    [
        ({"packages": ["numpy", "pandas"]}, ["numpy", "pandas"]),
        ({"packages": [" numpy ", "", None]}, ["numpy"]),
        ({"packages": ["python", 3]}, ["python", "3"]),
    ],
)
def test_packages_from_metadata(metadata: dict, expected: list[str]) -> None:
    assert packages_from_metadata(metadata) == expected


@pytest.mark.parametrize("metadata", [{}, {"packages": "numpy"}, {"packages": []}, {"packages": ["  "]}])
def test_packages_from_metadata_rejects(metadata: dict) -> None:
    with pytest.raises(JobError, match="no package list"):
        packages_from_metadata(metadata)


async def test_workspace_lock_serializes_same_workspace() -> None:
    locks = _WorkspaceLocks()
    active = 0
    peak = 0

    async def job() -> None:
        nonlocal active, peak
        async with locks.hold("ws-1"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(job() for _ in range(5)))
    assert peak == 1
    assert len(locks) == 0


async def test_workspace_lock_allows_other_workspaces() -> None:
    locks = _WorkspaceLocks()
    inside = asyncio.Event()
    release = asyncio.Event()

    async def hold_first() -> None:
        async with locks.hold("ws-1"):
            inside.set()
            await release.wait()

    first = asyncio.create_task(hold_first())
    await inside.wait()

    async with locks.hold("ws-2"):
        assert len(locks) == 2

    release.set()
    await first
    assert len(locks) == 0


async def test_workspace_lock_released_on_error() -> None:
    locks = _WorkspaceLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold("ws-1"):
            raise RuntimeError("boom")
    async with asyncio.timeout(1):
        async with locks.hold("ws-1"):
            pass
    assert len(locks) == 0
