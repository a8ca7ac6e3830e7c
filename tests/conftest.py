"""Shared test fixtures for modkeeper."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from modkeeper import config as config_module
from modkeeper.config import ModkeeperConfig, load_config
from modkeeper.errors import NotFound
from modkeeper.models import FulfillmentRecord, VersionDescriptor, VersionFile
from modkeeper.services import Services, build_services

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRegistry:
    """In-memory registry client; returns every version regardless of filters."""

    def __init__(self) -> None:
        self.versions: Dict[str, List[VersionDescriptor]] = {}
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def add_project(self, project_id: str, slug: Optional[str] = None, title: Optional[str] = None) -> None:
        self.projects[project_id] = {"id": project_id, "slug": slug or project_id, "title": title or project_id}
        self.versions.setdefault(project_id, [])

    def add_version(self, version: VersionDescriptor) -> VersionDescriptor:
        self.versions.setdefault(version.project_id, []).append(version)
        return version

    def list_versions(self, project_id: str, loader: str, game_version: str) -> List[VersionDescriptor]:
        self.calls.append(project_id)
        if project_id in self.errors:
            raise self.errors[project_id]
        if project_id not in self.versions:
            raise NotFound(f"Not found: {project_id}")
        return list(self.versions[project_id])

    def get_version(self, project_id: Optional[str], version_id: str) -> VersionDescriptor:
        for versions in self.versions.values():
            for version in versions:
                if version.version_id == version_id:
                    return version
        raise NotFound(f"Not found: {version_id}")

    def get_version_by_hash(self, file_hash: str, algorithm: str = "sha1") -> VersionDescriptor:
        self.calls.append(f"hash:{file_hash}")
        for versions in self.versions.values():
            for version in versions:
                if any((file.hashes.get(algorithm) or "").lower() == file_hash.lower() for file in version.files):
                    return version
        raise NotFound(f"Not found: {file_hash}")

    def get_project(self, identifier: str) -> Dict[str, Any]:
        for project in self.projects.values():
            if identifier in (project["id"], project["slug"]):
                return project
        raise NotFound(f"Not found: {identifier}")


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[tuple[Path, FulfillmentRecord]] = []

    def notify_fulfilled(self, server: Path, record: FulfillmentRecord) -> None:
        self.events.append((server, record))


def make_version(
    project_id: str,
    version_number: str,
    *,
    stable: bool = True,
    published: datetime = EPOCH,
    loaders: tuple[str, ...] = ("fabric",),
    game_versions: tuple[str, ...] = ("1.21.1",),
    files: tuple[VersionFile, ...] = (),
    version_id: Optional[str] = None,
) -> VersionDescriptor:
    return VersionDescriptor(
        version_id=version_id or f"{project_id}-{version_number}",
        project_id=project_id,
        version_number=version_number,
        is_stable=stable,
        published_at=published,
        loaders=frozenset(loaders),
        game_versions=frozenset(game_versions),
        files=files,
    )


def sha1_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


@pytest.fixture
def clock() -> FakeClock:
    """Provide a clock frozen at 2024-01-01 UTC."""
    return FakeClock()


@pytest.fixture
def fake_registry() -> FakeRegistry:
    """Provide an empty in-memory registry."""
    return FakeRegistry()


@pytest.fixture
def sink() -> RecordingSink:
    """Provide a notification sink that records fulfillment events."""
    return RecordingSink()


@pytest.fixture
def server_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Provide a server root with a fabric .modkeeper.json and isolated user config."""
    root = tmp_path / "server"
    root.mkdir()
    (root / ".modkeeper.json").write_text(
        json.dumps({"name": "test-server", "server_type": "FABRIC", "minecraft_version": "1.21.1"})
    )
    user_dir = tmp_path / "user-config"
    monkeypatch.setattr(config_module, "USER_CONFIG_DIR", user_dir)
    monkeypatch.setattr(config_module, "USER_CONFIG_PATH", user_dir / "config.json")
    for name in (
        "MODKEEPER_SERVER_ROOT",
        "MODKEEPER_DATA_DIR",
        "MODKEEPER_LOG_FILE",
        "MODKEEPER_LOG_LEVEL",
        "MODKEEPER_DOWNLOAD_TIMEOUT",
        "MODKEEPER_WATCH_INTERVAL_HOURS",
        "MODKEEPER_REGISTRY_URL",
        "MODKEEPER_API_USER_AGENT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(root)
    return root


@pytest.fixture
def cfg(server_root: Path) -> ModkeeperConfig:
    """Provide the resolved configuration for the test server root."""
    return load_config(server_root)


@pytest.fixture
def services(cfg: ModkeeperConfig, fake_registry: FakeRegistry, sink: RecordingSink) -> Services:
    """Provide fully wired services backed by the fake registry."""
    return build_services(cfg, registry=fake_registry, notifier=sink)


@pytest.fixture
def remote_dir(tmp_path: Path) -> Path:
    """Directory standing in for the registry CDN (served via file:// URLs)."""
    path = tmp_path / "remote"
    path.mkdir()
    return path


@pytest.fixture
def publish(remote_dir: Path, fake_registry: FakeRegistry) -> Callable[..., VersionDescriptor]:
    """Factory fixture: write a jar to the fake CDN and register a version for it."""

    def _publish(
        project_id: str,
        version_number: str,
        *,
        content: Optional[bytes] = None,
        filename: Optional[str] = None,
        declared_sha1: Optional[str] = None,
        **kwargs: Any,
    ) -> VersionDescriptor:
        data = content if content is not None else f"{project_id}-{version_number}".encode()
        name = filename or f"{project_id}-{version_number}.jar"
        path = remote_dir / name
        path.write_bytes(data)
        file = VersionFile(
            url=path.as_uri(),
            filename=name,
            is_primary=True,
            hashes={"sha1": declared_sha1 or sha1_of(data)},
            size=len(data),
        )
        if project_id not in fake_registry.projects:
            fake_registry.add_project(project_id)
        return fake_registry.add_version(make_version(project_id, version_number, files=(file,), **kwargs))

    return _publish
