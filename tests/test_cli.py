"""Tests for the Cortex CLI entry points."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from conftest import make_event, make_unit
from rich.console import Console
from typer.testing import CliRunner

from cortex.automations.models import Run
from cortex.cli import app
from cortex.config.schema import CortexConfig
from cortex.storage.rules import RuleStore

runner = CliRunner()


def _make_config(tmp_path: Path) -> CortexConfig:
    return CortexConfig(
        cortex={"data_dir": str(tmp_path / "data"), "log_file": str(tmp_path / "cortex.log")},
        store={"sqlite_path": str(tmp_path / "data" / "cortex.db")},
    )


@pytest.fixture
def config(tmp_path: Path) -> Iterator[CortexConfig]:
    cfg = _make_config(tmp_path)
    mock = MagicMock()
    mock.load.return_value = cfg
    mock.exists.return_value = False
    mock.get_config_path.return_value = tmp_path / "config.toml"
    with (
        patch("cortex.cli.ConfigManager", return_value=mock),
        patch("cortex.cli.console", Console(width=200)),
    ):
        yield cfg


def _store(cfg: CortexConfig) -> RuleStore:
    cfg.get_sqlite_path().parent.mkdir(parents=True, exist_ok=True)
    return RuleStore(cfg.get_sqlite_path())


def _write_json(path: Path, data: dict) -> Path:
    path.write_text(json.dumps(data))
    return path


# ------------------------------------------------------------------
# No args: should show help
# ------------------------------------------------------------------


def test_no_args_shows_help() -> None:
    result = runner.invoke(app, [])
    assert "units" in result.output
    assert "events" in result.output


# ------------------------------------------------------------------
# cortex units
# ------------------------------------------------------------------


class TestUnitsCommands:
    def test_add_and_list(self, config: CortexConfig, tmp_path: Path) -> None:
        unit = make_unit(name="Forward invoices")
        path = _write_json(tmp_path / "unit.json", unit.to_dict())

        result = runner.invoke(app, ["units", "add", str(path)])
        assert result.exit_code == 0, result.output
        assert "Unit saved" in result.output

        result = runner.invoke(app, ["units", "list"])
        assert result.exit_code == 0
        assert "Forward invoices" in result.output

    def test_add_with_owner_override(self, config: CortexConfig, tmp_path: Path) -> None:
        unit = make_unit()
        path = _write_json(tmp_path / "unit.json", unit.to_dict())
        runner.invoke(app, ["units", "add", str(path), "--owner", "u9"])
        store = _store(config)
        try:
            assert store.get_unit(unit.id).owner_id == "u9"
        finally:
            store.close()

    def test_add_invalid_unit(self, config: CortexConfig, tmp_path: Path) -> None:
        path = _write_json(tmp_path / "bad.json", {"owner_id": "u1", "trigger": {"type": "x"}})
        result = runner.invoke(app, ["units", "add", str(path)])
        assert result.exit_code == 1
        assert "Invalid unit" in result.output

    def test_add_unreadable_file(self, config: CortexConfig, tmp_path: Path) -> None:
        result = runner.invoke(app, ["units", "add", str(tmp_path / "missing.json")])
        assert result.exit_code == 1

    def test_list_empty(self, config: CortexConfig) -> None:
        result = runner.invoke(app, ["units", "list"])
        assert result.exit_code == 0
        assert "No automation units" in result.output

    def test_status_changes(self, config: CortexConfig) -> None:
        unit = make_unit()
        store = _store(config)
        store.add_unit(unit)
        store.close()

        transitions = (("pause", "paused"), ("disable", "disabled"), ("resume", "active"))
        for command, status in transitions:
            result = runner.invoke(app, ["units", command, unit.id])
            assert result.exit_code == 0, result.output
            store = _store(config)
            assert store.get_unit(unit.id).status == status
            store.close()

    def test_status_change_unknown_unit(self, config: CortexConfig) -> None:
        result = runner.invoke(app, ["units", "pause", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_remove(self, config: CortexConfig) -> None:
        unit = make_unit()
        store = _store(config)
        store.add_unit(unit)
        store.close()
        assert runner.invoke(app, ["units", "remove", unit.id]).exit_code == 0
        assert runner.invoke(app, ["units", "remove", unit.id]).exit_code == 1


# ------------------------------------------------------------------
# cortex events / runs / sweep
# ------------------------------------------------------------------


class TestRunCommands:
    def test_ingest_executes_matching_unit(self, config: CortexConfig, tmp_path: Path) -> None:
        store = _store(config)
        store.add_unit(make_unit(actions=[{"type": "log", "message": "got {{payload.subject}}"}]))
        store.close()
        path = _write_json(tmp_path / "event.json", make_event().to_dict())

        result = runner.invoke(app, ["events", "ingest", str(path)])

        assert result.exit_code == 0, result.output
        assert "success" in result.output
        store = _store(config)
        try:
            runs = store.list_runs()
            assert len(runs) == 1
            assert runs[0].status == "success"
        finally:
            store.close()

    def test_ingest_without_match(self, config: CortexConfig, tmp_path: Path) -> None:
        path = _write_json(tmp_path / "event.json", make_event().to_dict())
        result = runner.invoke(app, ["events", "ingest", str(path)])
        assert result.exit_code == 0
        assert "No units matched" in result.output

    def test_ingest_missing_field(self, config: CortexConfig, tmp_path: Path) -> None:
        path = _write_json(tmp_path / "event.json", {"source": "gmail"})
        result = runner.invoke(app, ["events", "ingest", str(path)])
        assert result.exit_code == 1
        assert "missing field" in result.output

    def test_runs_list_and_show(self, config: CortexConfig) -> None:
        unit = make_unit()
        store = _store(config)
        store.add_unit(unit)
        run = Run.for_event(unit.id, make_event())
        store.create_run(run)
        store.close()

        result = runner.invoke(app, ["runs", "list"])
        assert result.exit_code == 0
        assert "pending" in result.output

        result = runner.invoke(app, ["runs", "show", run.id])
        assert result.exit_code == 0
        assert unit.id in result.output

    def test_runs_show_unknown(self, config: CortexConfig) -> None:
        result = runner.invoke(app, ["runs", "show", "nope"])
        assert result.exit_code == 1

    def test_rerun(self, config: CortexConfig, tmp_path: Path) -> None:
        store = _store(config)
        store.add_unit(make_unit())
        store.close()
        path = _write_json(tmp_path / "event.json", make_event().to_dict())
        runner.invoke(app, ["events", "ingest", str(path)])

        store = _store(config)
        run_id = store.list_runs()[0].id
        store.close()

        result = runner.invoke(app, ["runs", "rerun", run_id])
        assert result.exit_code == 0, result.output
        result = runner.invoke(app, ["runs", "rerun", run_id])
        assert result.exit_code == 1
        assert "already been rerun" in result.output

    def test_sweep(self, config: CortexConfig) -> None:
        result = runner.invoke(app, ["sweep"])
        assert result.exit_code == 0, result.output
        assert "Resumed" in result.output


# ------------------------------------------------------------------
# cortex config
# ------------------------------------------------------------------


class TestConfigCommands:
    def test_show(self, config: CortexConfig) -> None:
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "kv_backend" in result.output

    def test_path(self, config: CortexConfig, tmp_path: Path) -> None:
        result = runner.invoke(app, ["config", "path"])
        assert result.exit_code == 0
        assert "config.toml" in result.output


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.setenv("CORTEX_CONFIG_DIR", str(tmp_path / "cfg"))
    with patch("cortex.cli.console", Console(width=200)):
        yield tmp_path / "cfg"


class TestConfigEditCommands:
    def test_init_then_refuses_without_force(self, config_dir: Path) -> None:
        result = runner.invoke(app, ["config", "init"])
        assert result.exit_code == 0, result.output
        assert "Config written" in result.output
        assert (config_dir / "config.toml").is_file()

        result = runner.invoke(app, ["config", "init"])
        assert result.exit_code == 1
        assert "--force" in result.output

        result = runner.invoke(app, ["config", "init", "--force"])
        assert result.exit_code == 0

    def test_set_value(self, config_dir: Path) -> None:
        result = runner.invoke(app, ["config", "set", "runtime.max_concurrent_runs", "4"])
        assert result.exit_code == 0, result.output
        assert "runtime.max_concurrent_runs updated" in result.output
        assert "max_concurrent_runs = 4" in (config_dir / "config.toml").read_text()

    def test_set_unknown_key(self, config_dir: Path) -> None:
        result = runner.invoke(app, ["config", "set", "store.nope", "x"])
        assert result.exit_code == 1
        assert "Unknown config key" in result.output

    def test_set_breaking_invariant(self, config_dir: Path) -> None:
        result = runner.invoke(app, ["config", "set", "cache.entity_ttl_seconds", "60"])
        assert result.exit_code == 1
        assert "Invalid config" in result.output
        assert not (config_dir / "config.toml").exists()
