"""Tests for pixi auto-install: platform mapping, archive extraction, download."""

from __future__ import annotations

import asyncio
import io
import os
import tarfile
from pathlib import Path

import httpx
import pytest

from nebi.server.pkgmgr import ToolMissingError
from nebi.server.pkgmgr.installer import PixiInstaller, binary_name, extract_binary, platform_target


def _archive(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.mark.parametrize(
    ("system", "machine", "expected"),
    [
        ("Linux", "x86_64", "x86_64-unknown-linux-musl"),
        ("Linux", "aarch64", "aarch64-unknown-linux-musl"),
        ("Darwin", "arm64", "aarch64-apple-darwin"),
        ("Windows", "AMD64", "x86_64-pc-windows-msvc"),
    ],
)
def test_platform_target(system: str, machine: str, expected: str) -> None:
    assert platform_target(system, machine) == expected


def test_platform_target_unsupported() -> None:
    with pytest.raises(ToolMissingError):
        platform_target("Linux", "riscv64")


def test_binary_name() -> None:
    assert binary_name("windows") == "pixi.exe"
    assert binary_name("linux") == "pixi"


def test_extract_binary(tmp_path: Path) -> None:
    dest = tmp_path / "bin" / "pixi"
    extract_binary(_archive({"README.md": b"docs", "pixi": b"#!/bin/sh\necho pixi\n"}), dest)

    assert dest.read_bytes() == b"#!/bin/sh\necho pixi\n"
    assert os.access(dest, os.X_OK)
    assert [p.name for p in dest.parent.iterdir()] == ["pixi"]


def test_extract_binary_missing_member(tmp_path: Path) -> None:
    with pytest.raises(ToolMissingError, match="not found"):
        extract_binary(_archive({"other": b"x"}), tmp_path / "pixi")


def test_extract_binary_corrupt_archive(tmp_path: Path) -> None:
    with pytest.raises(ToolMissingError, match="invalid"):
        extract_binary(b"not a tarball", tmp_path / "pixi")


@pytest.fixture
def no_pixi_on_path(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("nebi.server.pkgmgr.installer.shutil.which", lambda _name: None)


async def test_installer_downloads_once(tmp_path: Path, no_pixi_on_path: None) -> None:
    requests: list[httpx.Request] = []
    archive = _archive({"pixi": b"binary"})

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=archive)

    installer = PixiInstaller(tmp_path, version="v0.0.1", transport=httpx.MockTransport(handler))
    paths = await asyncio.gather(installer.ensure(), installer.ensure(), installer.ensure())

    assert len(requests) == 1
    assert "/v0.0.1/pixi-" in str(requests[0].url)
    assert paths == [tmp_path / binary_name()] * 3
    assert (tmp_path / binary_name()).read_bytes() == b"binary"


async def test_installer_reuses_existing_install(tmp_path: Path, no_pixi_on_path: None) -> None:
    (tmp_path / binary_name()).write_bytes(b"already here")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("should not download")

    installer = PixiInstaller(tmp_path, transport=httpx.MockTransport(handler))
    assert await installer.ensure() == tmp_path / binary_name()


async def test_installer_download_failure(tmp_path: Path, no_pixi_on_path: None) -> None:
    installer = PixiInstaller(tmp_path, transport=httpx.MockTransport(lambda _req: httpx.Response(404)))
    with pytest.raises(ToolMissingError, match="failed to download"):
        await installer.ensure()
