"""End-to-end tests for the modkeeper command line."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest
from typer.testing import CliRunner

from conftest import EPOCH, FakeRegistry, RecordingSink
from modkeeper import cli as cli_module
from modkeeper.cli import app
from modkeeper.config import load_config
from modkeeper.models import VersionDescriptor
from modkeeper.mods import load_manifest, mods_dir
from modkeeper.services import build_services
from modkeeper.watcher import WatcherRegistry

runner = CliRunner()


@pytest.fixture(autouse=True)
def offline_services(
    server_root: Path,
    fake_registry: FakeRegistry,
    sink: RecordingSink,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Make every CLI command use the fake registry instead of Modrinth."""

    def _build(cfg, **kwargs):
        return build_services(cfg, registry=fake_registry, notifier=sink)

    monkeypatch.setattr(cli_module, "build_services", _build)


@pytest.fixture
def initialised(server_root: Path) -> Path:
    result = runner.invoke(app, ["mods", "init"])
    assert result.exit_code == 0, result.output
    return server_root


class TestMods:
    def test_init_creates_manifest(self, server_root: Path) -> None:
        result = runner.invoke(app, ["mods", "init"])
        assert result.exit_code == 0, result.output
        assert "loader=fabric" in result.output
        assert load_manifest(load_config(server_root)).mods == []

    def test_init_twice_fails(self, initialised: Path) -> None:
        result = runner.invoke(app, ["mods", "init"])
        assert result.exit_code == 1
        assert "--force" in result.output

    def test_add_installs(self, initialised: Path, publish: Callable[..., VersionDescriptor]) -> None:
        publish("sodium", "0.6.0")

        result = runner.invoke(app, ["mods", "add", "sodium"])

        assert result.exit_code == 0, result.output
        assert "Installed sodium 0.6.0" in result.output
        cfg = load_config(initialised)
        assert (mods_dir(cfg) / "sodium-0.6.0.jar").exists()

    def test_add_unknown_project(self, initialised: Path) -> None:
        result = runner.invoke(app, ["mods", "add", "nope"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_add_incompatible_without_watch(
        self, initialised: Path, publish: Callable[..., VersionDescriptor]
    ) -> None:
        publish("iris", "1.7.0", game_versions=("1.20.1",))

        result = runner.invoke(app, ["mods", "add", "iris"])

        assert result.exit_code == 3
        assert "--watch" in result.output
        assert not WatcherRegistry.watches_path(initialised).exists()

    def test_add_missing_download_is_not_offered_a_watch(
        self, initialised: Path, remote_dir: Path, publish: Callable[..., VersionDescriptor]
    ) -> None:
        publish("sodium", "0.6.0")
        (remote_dir / "sodium-0.6.0.jar").unlink()

        result = runner.invoke(app, ["mods", "add", "sodium", "--watch"])

        assert result.exit_code == 1
        assert "has no version" not in result.output
        assert not WatcherRegistry.watches_path(initialised).exists()
        assert load_manifest(load_config(initialised)).mods == []

    def test_init_adopts_and_matches_registry(
        self, server_root: Path, publish: Callable[..., VersionDescriptor]
    ) -> None:
        publish("sodium", "0.6.0", content=b"sodium jar")
        directory = mods_dir(load_config(server_root))
        directory.mkdir(parents=True)
        (directory / "sodium.jar").write_bytes(b"sodium jar")

        result = runner.invoke(app, ["mods", "init", "--adopt-existing"])

        assert result.exit_code == 0, result.output
        assert "Adopted 1 existing mod(s)." in result.output
        entry = load_manifest(load_config(server_root)).find("sodium")
        assert (entry.project_id, entry.current_version_number) == ("sodium", "0.6.0")

    def test_add_incompatible_with_watch(self, initialised: Path, publish: Callable[..., VersionDescriptor]) -> None:
        publish("iris", "1.7.0", game_versions=("1.20.1",))

        result = runner.invoke(app, ["mods", "add", "iris", "--watch"])

        assert result.exit_code == 0, result.output
        state = json.loads(WatcherRegistry.watches_path(initialised).read_text())
        assert [watch["project_id"] for watch in state["watches"]] == ["iris"]

    def test_check_then_update(self, initialised: Path, publish: Callable[..., VersionDescriptor]) -> None:
        publish("sodium", "0.5.0")
        assert runner.invoke(app, ["mods", "add", "sodium"]).exit_code == 0
        publish("sodium", "0.6.0", published=EPOCH + timedelta(days=1))

        checked = runner.invoke(app, ["mods", "check"])
        assert checked.exit_code == 0, checked.output
        assert "Checked 1 mod(s): 1 update(s)" in checked.output

        updated = runner.invoke(app, ["mods", "update", "--all"])
        assert updated.exit_code == 0, updated.output
        entry = load_manifest(load_config(initialised)).find("sodium")
        assert entry.current_version_number == "0.6.0"

    def test_verify_reports_tampering(
        self, initialised: Path, publish: Callable[..., VersionDescriptor]
    ) -> None:
        publish("sodium", "0.6.0")
        assert runner.invoke(app, ["mods", "add", "sodium"]).exit_code == 0
        cfg = load_config(initialised)
        (mods_dir(cfg) / "sodium-0.6.0.jar").write_bytes(b"tampered")

        result = runner.invoke(app, ["mods", "verify"])

        assert result.exit_code == 4
        assert (cfg.state_dir / "error-report.json").exists()

    def test_remove_all(self, initialised: Path, publish: Callable[..., VersionDescriptor]) -> None:
        publish("sodium", "0.6.0")
        assert runner.invoke(app, ["mods", "add", "sodium"]).exit_code == 0

        result = runner.invoke(app, ["mods", "remove", "--all"])

        assert result.exit_code == 0, result.output
        assert "Removed 1 mod(s); deleted 1 file(s)." in result.output


class TestIntegrity:
    def test_store_then_verify(self, server_root: Path) -> None:
        jar = server_root / "custom.jar"
        jar.write_bytes(b"custom")

        unknown = runner.invoke(app, ["integrity", "verify", str(jar)])
        assert unknown.exit_code == 3

        stored = runner.invoke(app, ["integrity", "verify", str(jar), "--store"])
        assert stored.exit_code == 0, stored.output
        assert runner.invoke(app, ["integrity", "verify", str(jar)]).exit_code == 0

        jar.write_bytes(b"changed")
        mismatch = runner.invoke(app, ["integrity", "verify", str(jar)])
        assert mismatch.exit_code == 4
        assert "mismatch" in mismatch.output

    def test_other_algorithm_than_stored_record(self, server_root: Path) -> None:
        jar = server_root / "custom.jar"
        jar.write_bytes(b"custom")
        assert runner.invoke(app, ["integrity", "verify", str(jar), "--store"]).exit_code == 0

        result = runner.invoke(app, ["integrity", "verify", str(jar), "--algorithm", "sha256"])

        assert result.exit_code == 3
        assert "mismatch" not in result.output


class TestWatchAndErrors:
    def test_watch_add_list_remove(self, server_root: Path, fake_registry: FakeRegistry) -> None:
        fake_registry.add_project("iris", title="Iris Shaders")

        added = runner.invoke(app, ["watch", "add", "iris"])
        assert added.exit_code == 0, added.output
        assert "Watching Iris Shaders for fabric 1.21.1" in added.output

        listed = runner.invoke(app, ["watch", "list"])
        assert listed.exit_code == 0
        assert "Next check" in listed.output

        assert runner.invoke(app, ["watch", "remove", "iris"]).exit_code == 0
        assert runner.invoke(app, ["watch", "remove", "iris"]).exit_code == 1

    def test_interval_is_validated_and_saved(self, server_root: Path) -> None:
        assert runner.invoke(app, ["watch", "interval", "13"]).exit_code == 1

        result = runner.invoke(app, ["watch", "interval", "24"])

        assert result.exit_code == 0, result.output
        assert load_config(server_root).watch_interval_hours == 24

    def test_errors_report_when_empty(self, server_root: Path) -> None:
        result = runner.invoke(app, ["errors", "report"])
        assert result.exit_code == 0
        assert "No errors have been recorded yet." in result.output

    def test_errors_accumulate_across_commands(
        self, initialised: Path, remote_dir: Path, publish: Callable[..., VersionDescriptor]
    ) -> None:
        publish("sodium", "0.6.0")
        (remote_dir / "sodium-0.6.0.jar").unlink()
        assert runner.invoke(app, ["mods", "add", "sodium"]).exit_code == 1
        assert runner.invoke(app, ["mods", "add", "sodium"]).exit_code == 1

        result = runner.invoke(app, ["errors", "report", "--json"])

        assert result.exit_code == 0, result.output
        assert '"total_errors": 2' in result.output
