import json

import pytest
import typer
from typer.testing import CliRunner

from cfops.cli import _fail, app
from cfops.plugin import CapabilityNotFound
from conftest import FIXTURE_PLUGINS

runner = CliRunner()


def _base_args(tmp_path):
    return ["--plugin-dir", str(FIXTURE_PLUGINS), "--config-path", str(tmp_path / "missing.yaml")]


def test_list_tiles(tmp_path):
    result = runner.invoke(app, ["list-tiles", *_base_args(tmp_path)])
    assert result.exit_code == 0, result.stdout
    assert "noop-tile" in result.stdout
    assert "failing-tile" in result.stdout


def test_list_tiles_empty_directory(tmp_path):
    result = runner.invoke(app, ["list-tiles", "--plugin-dir", str(tmp_path), "--config-path", str(tmp_path / "x.yaml")])
    assert result.exit_code == 0
    assert "No plugins found" in result.stdout


def test_backup_and_restore(tmp_path):
    destination = tmp_path / "backup"
    result = runner.invoke(
        app,
        ["backup", "--tile", "noop-tile", "--destination", str(destination), "--option", "full=yes", *_base_args(tmp_path)],
    )
    assert result.exit_code == 0, result.stdout
    assert "Backed up" in result.stdout
    marker = json.loads((destination / "noop-tile.json").read_text(encoding="utf-8"))
    assert marker["options"] == {"full": "yes"}

    result = runner.invoke(
        app, ["restore", "--tile", "noop-tile", "--destination", str(destination), *_base_args(tmp_path)]
    )
    assert result.exit_code == 0, result.stdout
    assert "Restored" in result.stdout


def test_unknown_tile_reports_phase(tmp_path):
    result = runner.invoke(
        app, ["backup", "--tile", "elastic-runtime", "--destination", str(tmp_path), *_base_args(tmp_path)]
    )
    assert result.exit_code == 1
    assert "elastic-runtime" in result.stdout
    assert "dispense" in result.stdout


def test_remote_failure_reports_phase(tmp_path):
    result = runner.invoke(
        app, ["backup", "--tile", "failing-tile", "--destination", str(tmp_path), *_base_args(tmp_path)]
    )
    assert result.exit_code == 1
    assert "failing-tile" in result.stdout
    assert "call" in result.stdout


def test_bad_option_pair(tmp_path):
    result = runner.invoke(
        app,
        ["backup", "--tile", "noop-tile", "--destination", str(tmp_path), "--option", "novalue", *_base_args(tmp_path)],
    )
    assert result.exit_code != 0


def test_plugin_meta_command():
    result = runner.invoke(app, ["plugin-meta", str(FIXTURE_PLUGINS / "noop_tile_plugin.py")])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["name"] == "noop-tile"


def test_fail_always_exits():
    with pytest.raises(typer.Exit) as info:
        _fail(CapabilityNotFound("no plugin provides tile 'x'", plugin="x"))
    assert info.value.exit_code == 1
