"""Tests for the click entry point that need no database."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from nebi.cli import alembic_config, main


def test_alembic_config_points_at_packaged_scripts() -> None:
    cfg = alembic_config()
    script_dir = Path(cfg.get_main_option("script_location"))
    assert (script_dir / "env.py").is_file()
    assert "dsn" not in cfg.attributes


def test_alembic_config_dsn_override() -> None:
    cfg = alembic_config("postgresql://nebi@db/nebi")
    assert cfg.attributes["dsn"] == "postgresql://nebi@db/nebi"


@pytest.mark.parametrize("args", [["--help"], ["db", "--help"], ["user", "create", "--help"]])
def test_help(args: list[str]) -> None:
    result = CliRunner().invoke(main, args)
    assert result.exit_code == 0
    assert "Usage:" in result.output


def test_create_user_requires_database(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("NEBI_DATABASE_DSN", raising=False)
    result = CliRunner().invoke(main, ["user", "create", "carol", "--password", "pw"])
    assert result.exit_code != 0
    assert "NEBI_DATABASE_DSN is not set." in result.output
