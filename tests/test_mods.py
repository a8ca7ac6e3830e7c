"""Tests for the mods manifest, installs, update checks and verification."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Callable

import pytest

from conftest import EPOCH, FakeRegistry, sha1_of
from modkeeper.config import ModkeeperConfig
from modkeeper.coordinator import CheckRequest
from modkeeper.errors import IntegrityMismatch, ManifestError, NotFound, TransientError
from modkeeper.models import VersionDescriptor
from modkeeper.mods import (
    ModManifest,
    default_manifest,
    disabled_dir,
    init_manifest,
    install_mod,
    inventory,
    load_manifest,
    lookup_project,
    mods_dir,
    purge_mods,
    remove_mod,
    server_target,
    set_enabled,
    update_mod,
    verify_installed,
)
from modkeeper.services import Services

Publish = Callable[..., VersionDescriptor]
LATER = EPOCH + timedelta(days=30)


@pytest.fixture
def manifest(cfg: ModkeeperConfig) -> ModManifest:
    """Provide a freshly initialised, empty manifest."""
    created, _ = init_manifest(cfg)
    return created


def _install(services: Services, manifest: ModManifest, slug: str, **kwargs):
    return install_mod(services, manifest, lookup_project(services.registry, slug), **kwargs)


class TestManifest:
    def test_init_uses_server_loader(self, cfg: ModkeeperConfig, manifest: ModManifest) -> None:
        assert manifest.loader == "fabric"
        assert manifest.minecraft_version == "1.21.1"
        assert load_manifest(cfg).mods == []

    def test_init_refuses_to_overwrite(self, cfg: ModkeeperConfig, manifest: ModManifest) -> None:
        with pytest.raises(ManifestError):
            init_manifest(cfg)
        init_manifest(cfg, force=True)

    def test_init_adopts_existing_jars(self, cfg: ModkeeperConfig) -> None:
        directory = cfg.data_dir / "mods"
        directory.mkdir(parents=True)
        (directory / "Sodium-0.5.jar").write_bytes(b"sodium")
        (directory / "notes.txt").write_text("ignored")

        manifest, adopted = init_manifest(cfg, adopt_existing=True)

        assert adopted == 1
        entry = manifest.find("sodium-0-5")
        assert entry.last_verified_hash == sha1_of(b"sodium")
        assert entry.last_verified_algorithm == "sha1"

    def test_adoption_matches_registry_by_hash(
        self, services: Services, cfg: ModkeeperConfig, fake_registry: FakeRegistry, publish: Publish
    ) -> None:
        publish("sodium", "mc1.21.1-0.5.9", content=b"sodium jar")
        directory = cfg.data_dir / "mods"
        directory.mkdir(parents=True)
        (directory / "sodium-fabric.jar").write_bytes(b"sodium jar")
        (directory / "homemade.jar").write_bytes(b"local build")

        manifest, adopted = init_manifest(cfg, adopt_existing=True, registry=fake_registry)

        assert adopted == 2
        matched = manifest.find("sodium-fabric")
        assert matched.project_id == "sodium"
        assert matched.version_id == "sodium-mc1.21.1-0.5.9"
        assert matched.current_version_number == "mc1.21.1-0.5.9"
        assert manifest.find("homemade").project_id is None

        publish("sodium", "mc1.21.1-0.6.0", published=LATER)
        report = services.update_checker(CheckRequest())
        assert report.checked == 1
        assert report.updates == {"sodium-fabric.jar": "mc1.21.1-0.6.0"}

    def test_adoption_survives_registry_outage(
        self, cfg: ModkeeperConfig, fake_registry: FakeRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def offline(file_hash, algorithm="sha1"):
            raise TransientError("Network error fetching version_file")

        monkeypatch.setattr(fake_registry, "get_version_by_hash", offline)
        directory = cfg.data_dir / "mods"
        directory.mkdir(parents=True)
        (directory / "iris.jar").write_bytes(b"iris")

        manifest, adopted = init_manifest(cfg, adopt_existing=True, registry=fake_registry)

        assert adopted == 1
        assert manifest.find("iris").project_id is None

    def test_non_mod_server_type_has_no_loader(self, cfg: ModkeeperConfig) -> None:
        paper = cfg.model_copy(update={"server_type": "PAPER"})
        manifest = default_manifest(paper)
        assert manifest.loader is None
        with pytest.raises(ManifestError, match="loader"):
            server_target(paper, manifest, "sodium")

    def test_missing_manifest(self, cfg: ModkeeperConfig) -> None:
        with pytest.raises(ManifestError, match="mods init"):
            load_manifest(cfg)

    def test_unsupported_schema(self, cfg: ModkeeperConfig, manifest: ModManifest) -> None:
        path = cfg.data_dir / "mods" / ".modkeeper-mods.json"
        path.write_text('{"schema_version": 2, "mods": []}')
        with pytest.raises(ManifestError, match="schema"):
            load_manifest(cfg)


class TestInstall:
    def test_install_downloads_and_records(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0", content=b"sodium jar")

        entry = _install(services, manifest, "sodium")

        path = mods_dir(cfg, manifest) / "sodium-0.6.0.jar"
        assert path.read_bytes() == b"sodium jar"
        assert entry.current_version_number == "0.6.0"
        assert entry.last_verified_hash == sha1_of(b"sodium jar")
        assert load_manifest(cfg).find("sodium").project_id == "sodium"

    def test_install_disabled(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0")
        _install(services, manifest, "sodium", enabled=False)
        assert (disabled_dir(cfg, manifest) / "sodium-0.6.0.jar").exists()

    def test_duplicate_id_rejected(self, services: Services, manifest: ModManifest, publish: Publish) -> None:
        publish("sodium", "0.6.0")
        _install(services, manifest, "sodium")
        with pytest.raises(ManifestError, match="already exists"):
            _install(services, manifest, "sodium")

    def test_incompatible_propagates_not_found(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("iris", "1.7.0", game_versions=("1.20.1",))
        with pytest.raises(NotFound):
            _install(services, manifest, "iris")
        assert load_manifest(cfg).mods == []

    def test_corrupt_download_is_not_recorded(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0", declared_sha1="0" * 40)
        with pytest.raises(IntegrityMismatch):
            _install(services, manifest, "sodium")
        assert not (mods_dir(cfg, manifest) / "sodium-0.6.0.jar").exists()
        assert manifest.mods == []


class TestUpdateChecker:
    def test_detects_update(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium")
        publish("sodium", "0.6.0", published=LATER)

        report = services.update_checker(CheckRequest())

        assert report.checked == 1
        assert report.updates == {"sodium-0.5.0.jar": "0.6.0"}
        assert report.enabled_updates == 1
        saved = load_manifest(cfg)
        assert saved.find("sodium").available_update.version_number == "0.6.0"
        assert saved.last_update_check is not None

    def test_up_to_date_clears_update(self, services: Services, manifest: ModManifest, publish: Publish) -> None:
        publish("sodium", "0.6.0")
        _install(services, manifest, "sodium")
        report = services.update_checker(CheckRequest())
        assert report.updates == {}
        assert report.total_updates == 0

    def test_cache_reused_until_forced(
        self,
        services: Services,
        fake_registry: FakeRegistry,
        manifest: ModManifest,
        publish: Publish,
    ) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium")

        services.update_checker(CheckRequest())
        calls = len(fake_registry.calls)
        services.update_checker(CheckRequest())
        assert len(fake_registry.calls) == calls

        services.update_checker(CheckRequest(force_refresh=True))
        assert len(fake_registry.calls) == calls + 1

    def test_disabled_updates_counted_separately(
        self, services: Services, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium", enabled=False)
        publish("sodium", "0.6.0", published=LATER)

        report = services.update_checker(CheckRequest())

        assert (report.enabled_updates, report.disabled_updates) == (0, 1)

    def test_targets_filter(self, services: Services, manifest: ModManifest, publish: Publish) -> None:
        publish("sodium", "0.5.0")
        publish("lithium", "0.12.0")
        _install(services, manifest, "sodium")
        _install(services, manifest, "lithium")

        report = services.update_checker(CheckRequest(targets=frozenset({"lithium"})))

        assert report.checked == 1

    def test_failures_are_isolated(
        self,
        services: Services,
        fake_registry: FakeRegistry,
        manifest: ModManifest,
        publish: Publish,
    ) -> None:
        publish("sodium", "0.5.0")
        publish("lithium", "0.12.0")
        _install(services, manifest, "sodium")
        _install(services, manifest, "lithium")
        publish("lithium", "0.13.0", published=LATER)
        fake_registry.errors["sodium"] = TransientError("Network error: connection reset")

        report = services.update_checker(CheckRequest())

        assert list(report.failures) == ["sodium-0.5.0.jar"]
        assert report.updates == {"lithium-0.12.0.jar": "0.13.0"}
        assert services.monitor.entries()[-1].source == "update-check"

    def test_runs_through_coordinator(self, services: Services, manifest: ModManifest, publish: Publish) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium")
        publish("sodium", "0.6.0", published=LATER)

        services.coordinator.trigger_check(CheckRequest(force_refresh=True))

        assert services.coordinator.last_result.total_updates == 1


class TestUpdateAndVerify:
    def test_update_replaces_file(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium")
        publish("sodium", "0.6.0", published=LATER, content=b"newer")
        services.update_checker(CheckRequest())

        current = load_manifest(cfg)
        entry = update_mod(services, current, "sodium")

        directory = mods_dir(cfg, current)
        assert (directory / "sodium-0.6.0.jar").read_bytes() == b"newer"
        assert not (directory / "sodium-0.5.0.jar").exists()
        assert entry.available_update is None
        assert load_manifest(cfg).find("sodium").last_verified_hash == sha1_of(b"newer")

    def test_update_requires_recorded_update(
        self, services: Services, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.5.0")
        _install(services, manifest, "sodium")
        with pytest.raises(ManifestError, match="No update"):
            update_mod(services, manifest, "sodium")

    def test_verify_installed_detects_tampering(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0")
        publish("lithium", "0.12.0")
        _install(services, manifest, "sodium")
        _install(services, manifest, "lithium")
        (mods_dir(cfg, manifest) / "lithium-0.12.0.jar").write_bytes(b"tampered")

        result = verify_installed(services, manifest)

        assert (result.total, result.valid, result.invalid) == (2, 1, 1)
        assert services.verifier.corruption_alerts()[0].file_path.endswith("lithium-0.12.0.jar")


class TestFiles:
    def test_inventory_reports_each_status(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0")
        publish("lithium", "0.12.0")
        publish("iris", "1.8.0")
        _install(services, manifest, "sodium")
        _install(services, manifest, "lithium")
        _install(services, manifest, "iris")
        directory = mods_dir(cfg, manifest)
        (directory / "lithium-0.12.0.jar").write_bytes(b"tampered")
        (directory / "iris-1.8.0.jar").unlink()
        (directory / "stray.jar").write_bytes(b"stray")

        result = inventory(cfg, manifest, services.verifier)

        statuses = {status.entry.id: status.status for status in result.entries}
        assert statuses == {"sodium": "ok", "lithium": "hash-mismatch", "iris": "missing"}
        assert [extra.filename for extra in result.extras] == ["stray.jar"]

    def test_disable_moves_file(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0")
        _install(services, manifest, "sodium")

        set_enabled(cfg, manifest=manifest, mod_id="sodium", enabled=False)

        assert (disabled_dir(cfg, manifest) / "sodium-0.6.0.jar").exists()
        assert not (mods_dir(cfg, manifest) / "sodium-0.6.0.jar").exists()
        assert inventory(cfg, manifest).entries[0].status == "ok"

    def test_remove_and_purge(
        self, services: Services, cfg: ModkeeperConfig, manifest: ModManifest, publish: Publish
    ) -> None:
        publish("sodium", "0.6.0")
        publish("lithium", "0.12.0")
        publish("iris", "1.8.0")
        for slug in ("sodium", "lithium", "iris"):
            _install(services, manifest, slug)

        _, deleted = remove_mod(cfg, manifest=manifest, mod_id="sodium")
        assert [path.name for path in deleted] == ["sodium-0.6.0.jar"]

        count, _ = purge_mods(cfg, manifest=manifest, remove_files=False)
        assert count == 2
        assert load_manifest(cfg).mods == []
        assert (mods_dir(cfg, manifest) / "iris-1.8.0.jar").exists()

    def test_unknown_mod(self, cfg: ModkeeperConfig, manifest: ModManifest) -> None:
        with pytest.raises(ManifestError):
            set_enabled(cfg, manifest=manifest, mod_id="nope", enabled=False)

    def test_mods_dir_lives_under_data_dir(self, cfg: ModkeeperConfig, server_root: Path) -> None:
        assert mods_dir(cfg) == server_root.resolve() / "data" / "mods"
