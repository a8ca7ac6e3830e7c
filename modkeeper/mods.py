from __future__ import annotations

import logging
import re
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from .config import ModkeeperConfig, load_config
from .coordinator import CheckRequest
from .errors import ManifestError, ModkeeperError, NotFound, TransientError
from .integrity import DEFAULT_ALGORITHM, IntegrityVerifier, ProgressCallback
from .models import (
    ArtifactTarget,
    AvailableUpdate,
    BatchVerifyResult,
    InstalledArtifactRecord,
    VersionDescriptor,
    VersionFile,
)
from .monitor import ErrorMonitor
from .registry import RegistryClient
from .store import JsonFileStore
from .versions import VersionResolver, is_upgrade

if TYPE_CHECKING:  # pragma: no cover
    from .services import Services

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = ".modkeeper-mods.json"
DEFAULT_MODS_DIR = "mods"
DEFAULT_DISABLED_DIR_SUFFIX = "-disabled"
SUPPORTED_SCHEMA_VERSION = 1
MOD_LOADERS = ("fabric", "quilt", "forge", "neoforge")


class ModManifest(BaseModel):
    schema_version: int = SUPPORTED_SCHEMA_VERSION
    loader: Optional[str] = None
    minecraft_version: Optional[str] = None
    mods_dir: str = DEFAULT_MODS_DIR
    last_update_check: Optional[datetime] = None
    mods: List[InstalledArtifactRecord] = Field(default_factory=list)

    def find(self, mod_id: str) -> InstalledArtifactRecord:
        for mod in self.mods:
            if mod.id == mod_id:
                return mod
        raise ManifestError(f"Mod '{mod_id}' not found in manifest")

    def find_project(self, project_id: str) -> Optional[InstalledArtifactRecord]:
        for mod in self.mods:
            if mod.project_id == project_id:
                return mod
        return None

    def add(self, entry: InstalledArtifactRecord) -> None:
        if any(mod.id == entry.id for mod in self.mods):
            raise ManifestError(f"Mod '{entry.id}' already exists in manifest")
        self.mods.append(entry)

    def remove(self, mod_id: str) -> None:
        before = len(self.mods)
        self.mods = [mod for mod in self.mods if mod.id != mod_id]
        if len(self.mods) == before:
            raise ManifestError(f"Mod '{mod_id}' not found in manifest")


@dataclass
class ModFile:
    filename: str
    path: Path
    location: str  # "mods" or "mods-disabled"


@dataclass
class ManifestEntryStatus:
    entry: InstalledArtifactRecord
    location: Optional[str]
    present: bool
    hash_ok: Optional[bool]

    @property
    def status(self) -> str:
        if not self.present:
            return "missing"
        if self.entry.enabled and self.location != "mods":
            return "moved"
        if (not self.entry.enabled) and self.location != "mods-disabled":
            return "moved"
        if self.hash_ok is False:
            return "hash-mismatch"
        return "ok"


@dataclass
class Inventory:
    entries: List[ManifestEntryStatus]
    extras: List[ModFile]

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.entries),
            "ok": sum(1 for e in self.entries if e.status == "ok"),
            "missing": sum(1 for e in self.entries if e.status == "missing"),
            "moved": sum(1 for e in self.entries if e.status == "moved"),
            "hash_mismatch": sum(1 for e in self.entries if e.status == "hash-mismatch"),
            "extras": len(self.extras),
        }


@dataclass(frozen=True)
class ProjectInfo:
    project_id: str
    slug: str
    title: str


@dataclass
class UpdateReport:
    checked: int = 0
    updates: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    enabled_updates: int = 0
    disabled_updates: int = 0
    checked_at: Optional[datetime] = None

    @property
    def total_updates(self) -> int:
        return self.enabled_updates + self.disabled_updates


def manifest_path(cfg: ModkeeperConfig) -> Path:
    mods_dir = cfg.data_dir / DEFAULT_MODS_DIR
    return mods_dir / MANIFEST_FILENAME


def mods_dir(cfg: ModkeeperConfig, manifest: Optional[ModManifest] = None) -> Path:
    dir_name = manifest.mods_dir if manifest else DEFAULT_MODS_DIR
    return cfg.data_dir / dir_name


def disabled_dir(cfg: ModkeeperConfig, manifest: Optional[ModManifest] = None) -> Path:
    dir_name = manifest.mods_dir if manifest else DEFAULT_MODS_DIR
    return cfg.data_dir / f"{dir_name}{DEFAULT_DISABLED_DIR_SUFFIX}"


def entry_path(cfg: ModkeeperConfig, manifest: ModManifest, entry: InstalledArtifactRecord) -> Path:
    directory = mods_dir(cfg, manifest) if entry.enabled else disabled_dir(cfg, manifest)
    return directory / entry.file_name


def ensure_directories(cfg: ModkeeperConfig, manifest: Optional[ModManifest] = None) -> None:
    mods_dir(cfg, manifest).mkdir(parents=True, exist_ok=True)
    disabled_dir(cfg, manifest).mkdir(parents=True, exist_ok=True)


def load_manifest(cfg: ModkeeperConfig) -> ModManifest:
    path = manifest_path(cfg)
    data = JsonFileStore().read(path)
    if data is None:
        raise ManifestError("Mods manifest not found. Run 'modkeeper mods init' first.")
    try:
        manifest = ModManifest.model_validate(data)
    except ModelValidationError as exc:
        raise ManifestError(f"Invalid mods manifest {path}: {exc}") from exc
    if manifest.schema_version != SUPPORTED_SCHEMA_VERSION:
        raise ManifestError(
            f"Unsupported manifest schema version {manifest.schema_version}."
        )
    return manifest


def save_manifest(cfg: ModkeeperConfig, manifest: ModManifest) -> None:
    JsonFileStore().write(manifest_path(cfg), manifest.model_dump(mode="json", exclude_none=True))


def default_manifest(cfg: ModkeeperConfig) -> ModManifest:
    return ModManifest(
        loader=_loader_from_config(cfg),
        minecraft_version=cfg.minecraft_version,
        mods_dir=DEFAULT_MODS_DIR,
    )


def init_manifest(
    cfg: ModkeeperConfig,
    *,
    force: bool = False,
    adopt_existing: bool = False,
    verifier: Optional[IntegrityVerifier] = None,
    registry: Optional[RegistryClient] = None,
) -> tuple[ModManifest, int]:
    path = manifest_path(cfg)
    if path.exists() and not force:
        raise ManifestError("Mods manifest already exists. Use --force to overwrite.")

    manifest = default_manifest(cfg)

    ensure_directories(cfg, manifest)

    adopted: List[InstalledArtifactRecord] = []
    if adopt_existing:
        adopted = _adopt_existing_mods(
            cfg, manifest, verifier or IntegrityVerifier(JsonFileStore()), registry
        )

    save_manifest(cfg, manifest)
    return manifest, len(adopted)


def _adopt_existing_mods(
    cfg: ModkeeperConfig,
    manifest: ModManifest,
    verifier: IntegrityVerifier,
    registry: Optional[RegistryClient] = None,
) -> List[InstalledArtifactRecord]:
    """Record the jars already in the mods directory.

    With a ``registry`` each file's sha1 is looked up so the adopted entry
    carries a project id and takes part in update checks. Files the registry
    does not know stay local-only.
    """
    adopted: List[InstalledArtifactRecord] = []
    now = _utcnow()
    for file in _iter_mod_files(mods_dir(cfg, manifest)):
        checksum = verifier.compute_checksum(file, DEFAULT_ALGORITHM)
        version = _lookup_by_hash(registry, file, checksum) if registry is not None else None
        entry = InstalledArtifactRecord(
            id=_derive_mod_id(file.name),
            name=file.stem,
            file_name=file.name,
            project_id=version.project_id if version else None,
            version_id=version.version_id if version else None,
            current_version_number=version.version_number if version else None,
            enabled=True,
            loader=manifest.loader,
            game_version=manifest.minecraft_version,
            installed_at=now,
            last_verified_hash=checksum,
            last_verified_algorithm=DEFAULT_ALGORITHM,
            last_verified_at=now,
        )
        try:
            manifest.add(entry)
            adopted.append(entry)
        except ManifestError:
            continue
    return adopted


def _lookup_by_hash(registry: RegistryClient, file: Path, checksum: str) -> Optional[VersionDescriptor]:
    try:
        version = registry.get_version_by_hash(checksum, DEFAULT_ALGORITHM)
    except NotFound:
        logger.debug("No registry version matches %s", file.name)
        return None
    except TransientError as exc:
        logger.warning("Could not look up %s on the registry: %s", file.name, exc)
        return None
    logger.info("Matched %s to %s %s", file.name, version.project_id, version.version_number)
    return version


def _iter_mod_files(directory: Path) -> Iterable[Path]:
    if not directory.exists():
        return []
    return sorted(f for f in directory.iterdir() if f.is_file() and f.suffix in {".jar", ".zip"})


def inventory(
    cfg: ModkeeperConfig,
    manifest: ModManifest,
    verifier: Optional[IntegrityVerifier] = None,
) -> Inventory:
    ensure_directories(cfg, manifest)
    verifier = verifier or IntegrityVerifier(JsonFileStore())
    remaining_files = _scan_files(cfg, manifest)

    statuses: List[ManifestEntryStatus] = []
    for entry in manifest.mods:
        file_info = remaining_files.pop(entry.file_name, None)
        present = file_info is not None
        hash_ok: Optional[bool] = None
        if file_info is not None and entry.last_verified_hash:
            actual = verifier.compute_checksum(
                file_info.path, entry.last_verified_algorithm or DEFAULT_ALGORITHM
            )
            hash_ok = actual == entry.last_verified_hash.lower()
        statuses.append(
            ManifestEntryStatus(
                entry=entry,
                location=file_info.location if file_info else None,
                present=present,
                hash_ok=hash_ok,
            )
        )

    return Inventory(entries=statuses, extras=list(remaining_files.values()))


def _scan_files(cfg: ModkeeperConfig, manifest: ModManifest) -> Dict[str, ModFile]:
    files: Dict[str, ModFile] = {}
    for file in _iter_mod_files(mods_dir(cfg, manifest)):
        files[file.name] = ModFile(filename=file.name, path=file, location="mods")
    for file in _iter_mod_files(disabled_dir(cfg, manifest)):
        files[file.name] = ModFile(filename=file.name, path=file, location="mods-disabled")
    return files


def lookup_project(registry: RegistryClient, identifier: str) -> ProjectInfo:
    """Resolve a slug or id to the registry's project id and title."""
    data = registry.get_project(identifier)
    project_id = data.get("id") or identifier
    slug = data.get("slug") or identifier
    return ProjectInfo(project_id=project_id, slug=slug, title=data.get("title") or slug)


def server_target(
    cfg: ModkeeperConfig,
    manifest: ModManifest,
    project_id: str,
    *,
    loader: Optional[str] = None,
    game_version: Optional[str] = None,
) -> ArtifactTarget:
    resolved_loader = loader or manifest.loader or _loader_from_config(cfg)
    resolved_version = game_version or manifest.minecraft_version or cfg.minecraft_version
    if not resolved_loader:
        raise ManifestError("Cannot determine the server loader; set server_type in .modkeeper.json.")
    return ArtifactTarget(project_id=project_id, loader=resolved_loader, game_version=resolved_version)


def install_mod(
    services: "Services",
    manifest: ModManifest,
    project: ProjectInfo,
    *,
    mod_id: Optional[str] = None,
    loader: Optional[str] = None,
    game_version: Optional[str] = None,
    require_stable_only: bool = False,
    version: Optional[VersionDescriptor] = None,
    enabled: bool = True,
    on_progress: Optional[Callable[[int, Optional[int]], None]] = None,
) -> InstalledArtifactRecord:
    """Resolve, download and record the best version of ``project``.

    A ``version`` the caller already resolved is installed as is. Otherwise
    ``NotFound`` propagates untouched when no version supports the server;
    a missing download raises ``NotFound`` too, so callers that offer to
    watch the project resolve first.
    """
    cfg = services.config
    ensure_directories(cfg, manifest)
    record_id = mod_id or project.slug
    if any(mod.id == record_id for mod in manifest.mods):
        raise ManifestError(f"Mod '{record_id}' already exists in manifest")

    target = server_target(cfg, manifest, project.project_id, loader=loader, game_version=game_version)
    if version is None:
        version = services.resolver.resolve(target, require_stable_only=require_stable_only)
    file = _primary_file(version)

    destination = mods_dir(cfg, manifest) if enabled else disabled_dir(cfg, manifest)
    path = services.fetcher.fetch(
        file.url,
        destination,
        file.filename,
        expected_hash=file.hash,
        algorithm=file.hash_algorithm or DEFAULT_ALGORITHM,
        on_progress=on_progress,
    )
    checksum, algorithm = _recorded_hash(services.verifier, path, file.hash, file.hash_algorithm)

    now = _utcnow()
    entry = InstalledArtifactRecord(
        id=record_id,
        name=project.title,
        file_name=file.filename,
        project_id=project.project_id,
        version_id=version.version_id,
        current_version_number=version.version_number,
        loader=target.loader,
        game_version=target.game_version,
        enabled=enabled,
        installed_at=now,
        last_verified_hash=checksum,
        last_verified_algorithm=algorithm,
        last_verified_at=now,
    )
    manifest.add(entry)
    if manifest.loader is None:
        manifest.loader = target.loader
    if manifest.minecraft_version is None:
        manifest.minecraft_version = target.game_version
    save_manifest(cfg, manifest)
    logger.info("Installed %s %s (%s)", entry.name, entry.current_version_number, entry.file_name)
    return entry


def update_mod(
    services: "Services",
    manifest: ModManifest,
    mod_id: str,
    *,
    on_progress: Optional[Callable[[int, Optional[int]], None]] = None,
) -> InstalledArtifactRecord:
    """Apply the ``available_update`` recorded by the last update check."""
    cfg = services.config
    entry = manifest.find(mod_id)
    if entry.available_update is None:
        raise ManifestError(f"No update recorded for '{mod_id}'. Run 'modkeeper mods check' first.")
    if not entry.project_id:
        raise ManifestError(f"Mod '{mod_id}' has no registry project id.")

    version = services.registry.get_version(entry.project_id, entry.available_update.version_id)
    file = _primary_file(version)
    old_path = entry_path(cfg, manifest, entry)
    path = services.fetcher.fetch(
        file.url,
        old_path.parent,
        file.filename,
        expected_hash=file.hash,
        algorithm=file.hash_algorithm or DEFAULT_ALGORITHM,
        on_progress=on_progress,
    )
    if file.filename != entry.file_name and old_path.exists():
        old_path.unlink()
        logger.debug("Removed superseded file %s", old_path)

    checksum, algorithm = _recorded_hash(services.verifier, path, file.hash, file.hash_algorithm)
    now = _utcnow()
    previous = entry.current_version_number
    entry.file_name = file.filename
    entry.version_id = version.version_id
    entry.current_version_number = version.version_number
    entry.last_verified_hash = checksum
    entry.last_verified_algorithm = algorithm
    entry.last_verified_at = now
    entry.available_update = None
    save_manifest(cfg, manifest)
    logger.info("Updated %s from %s to %s", entry.id, previous, entry.current_version_number)
    return entry


def verify_installed(
    services: "Services",
    manifest: ModManifest,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchVerifyResult:
    """Re-hash every installed file against the hash recorded at install time."""
    cfg = services.config
    paths: List[Path] = []
    expected: Dict[Path, Tuple[str, str]] = {}
    entries: Dict[Path, InstalledArtifactRecord] = {}
    for entry in manifest.mods:
        path = entry_path(cfg, manifest, entry)
        paths.append(path)
        entries[path] = entry
        if entry.last_verified_hash:
            expected[path] = (entry.last_verified_hash, entry.last_verified_algorithm or DEFAULT_ALGORITHM)

    result = services.verifier.batch_verify(paths, on_progress, expected=expected)

    now = _utcnow()
    for item in result.files:
        if item.is_valid:
            entries[Path(item.file_path)].last_verified_at = now
    save_manifest(cfg, manifest)
    return result


def set_enabled(
    cfg: ModkeeperConfig,
    *,
    manifest: ModManifest,
    mod_id: str,
    enabled: bool,
    move_files: bool = True,
) -> InstalledArtifactRecord:
    ensure_directories(cfg, manifest)
    entry = manifest.find(mod_id)
    if entry.enabled == enabled:
        return entry

    src_dir = disabled_dir(cfg, manifest) if enabled else mods_dir(cfg, manifest)
    dst_dir = mods_dir(cfg, manifest) if enabled else disabled_dir(cfg, manifest)
    src_path = src_dir / entry.file_name

    # a missing source file is left for inventory to report
    if move_files and src_path.exists():
        shutil.move(str(src_path), str(dst_dir / entry.file_name))

    entry.enabled = enabled
    save_manifest(cfg, manifest)
    return entry


def remove_mod(
    cfg: ModkeeperConfig,
    *,
    manifest: ModManifest,
    mod_id: str,
    remove_files: bool = True,
) -> tuple[InstalledArtifactRecord, List[Path]]:
    """Remove a mod from the manifest and optionally delete its files."""

    ensure_directories(cfg, manifest)
    entry = manifest.find(mod_id)

    deleted_files: List[Path] = []
    if remove_files:
        for path in (mods_dir(cfg, manifest) / entry.file_name, disabled_dir(cfg, manifest) / entry.file_name):
            if path.exists():
                path.unlink()
                deleted_files.append(path)

    manifest.remove(mod_id)
    save_manifest(cfg, manifest)
    return entry, deleted_files


def purge_mods(
    cfg: ModkeeperConfig,
    *,
    manifest: ModManifest,
    remove_files: bool = True,
) -> tuple[int, List[Path]]:
    """Remove every mod from the manifest (optionally deleting files)."""

    deleted: List[Path] = []
    removed_count = 0
    for entry in list(manifest.mods):
        _, removed_paths = remove_mod(cfg, manifest=manifest, mod_id=entry.id, remove_files=remove_files)
        removed_count += 1
        deleted.extend(removed_paths)
    return removed_count, deleted


class UpdateChecker:
    """Refresh ``available_update`` for every installed mod with a project id.

    Instances are the runner handed to ``UpdateCheckCoordinator``. Resolved
    versions are cached between runs; a ``force_refresh`` request drops the
    cache first.
    """

    def __init__(
        self,
        resolver: VersionResolver,
        *,
        monitor: Optional[ErrorMonitor] = None,
        config_loader: Callable[[Optional[Path]], ModkeeperConfig] = load_config,
    ) -> None:
        self._resolver = resolver
        self._monitor = monitor
        self._config_loader = config_loader
        self._cache: Dict[ArtifactTarget, VersionDescriptor] = {}
        self._cache_lock = threading.Lock()

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _resolve(self, target: ArtifactTarget) -> VersionDescriptor:
        with self._cache_lock:
            cached = self._cache.get(target)
        if cached is not None:
            return cached
        version = self._resolver.resolve(target)
        with self._cache_lock:
            self._cache[target] = version
        return version

    def __call__(self, request: CheckRequest) -> UpdateReport:
        if request.force_refresh:
            self.clear_cache()

        cfg = self._config_loader(request.server_path)
        manifest = load_manifest(cfg)
        report = UpdateReport()

        for entry in manifest.mods:
            if not entry.project_id:
                continue
            if request.targets and not ({entry.id, entry.project_id} & set(request.targets)):
                continue
            report.checked += 1
            try:
                target = server_target(cfg, manifest, entry.project_id)
                best = self._resolve(target)
            except ModkeeperError as exc:
                logger.warning("Update check for %s failed: %s", entry.id, exc)
                report.failures[entry.file_name] = str(exc)
                if self._monitor is not None:
                    self._monitor.record_exception(
                        exc,
                        source="update-check",
                        mod_id=entry.project_id,
                        mod_name=entry.name or entry.id,
                    )
                continue

            if is_upgrade(best.version_number, entry.current_version_number):
                entry.available_update = AvailableUpdate(
                    version_id=best.version_id,
                    version_number=best.version_number,
                    checked_at=_utcnow(),
                )
                report.updates[entry.file_name] = best.version_number
                if entry.enabled:
                    report.enabled_updates += 1
                else:
                    report.disabled_updates += 1
            else:
                entry.available_update = None

        report.checked_at = _utcnow()
        manifest.last_update_check = report.checked_at
        save_manifest(cfg, manifest)
        logger.info(
            "Update check: %d checked, %d update(s), %d failure(s)",
            report.checked,
            report.total_updates,
            len(report.failures),
        )
        return report


def _primary_file(version: VersionDescriptor) -> VersionFile:
    file = version.primary_file
    if file is None or not file.url or not file.filename:
        raise NotFound(f"Version {version.version_number} has no downloadable file.")
    return file


def _recorded_hash(
    verifier: IntegrityVerifier,
    path: Path,
    checksum: Optional[str],
    algorithm: Optional[str],
) -> Tuple[str, str]:
    if checksum and algorithm:
        return checksum.lower(), algorithm
    return verifier.compute_checksum(path, DEFAULT_ALGORITHM), DEFAULT_ALGORITHM


def _derive_mod_id(filename: str) -> str:
    stem = Path(filename).stem
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", stem).strip("-").lower()
    return slug or "mod"


def _loader_from_config(cfg: ModkeeperConfig) -> Optional[str]:
    if not cfg.server_type:
        return None
    key = cfg.server_type.strip().lower()
    return key if key in MOD_LOADERS else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
