from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HASH_PREFERENCE = ("sha512", "sha256", "sha1", "md5")


class ArtifactTarget(BaseModel):
    """What compatible version is needed: project + loader + game version."""

    model_config = ConfigDict(frozen=True)

    project_id: str
    loader: str
    game_version: str

    @field_validator("loader")
    @classmethod
    def _normalize_loader(cls, value: str) -> str:
        return value.strip().lower()

    def __str__(self) -> str:
        return f"{self.project_id}@{self.loader}/{self.game_version}"


class VersionFile(BaseModel):
    url: str
    filename: str
    is_primary: bool = False
    hashes: Dict[str, str] = Field(default_factory=dict)
    size: Optional[int] = None

    @property
    def hash_algorithm(self) -> Optional[str]:
        for algorithm in HASH_PREFERENCE:
            if self.hashes.get(algorithm):
                return algorithm
        return None

    @property
    def hash(self) -> Optional[str]:
        algorithm = self.hash_algorithm
        return self.hashes[algorithm] if algorithm else None


class VersionDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    version_id: str
    project_id: Optional[str] = None
    version_number: str
    name: Optional[str] = None
    is_stable: bool = True
    published_at: datetime
    loaders: frozenset[str] = frozenset()
    game_versions: frozenset[str] = frozenset()
    files: tuple[VersionFile, ...] = ()

    @property
    def primary_file(self) -> Optional[VersionFile]:
        for file in self.files:
            if file.is_primary:
                return file
        return self.files[0] if self.files else None

    def supports(self, target: ArtifactTarget) -> bool:
        loaders = {loader.lower() for loader in self.loaders}
        return target.loader in loaders and target.game_version in self.game_versions


class AvailableUpdate(BaseModel):
    version_id: str
    version_number: str
    checked_at: datetime


class InstalledArtifactRecord(BaseModel):
    id: str
    name: Optional[str] = None
    file_name: str
    project_id: Optional[str] = None
    version_id: Optional[str] = None
    current_version_number: Optional[str] = None
    loader: Optional[str] = None
    game_version: Optional[str] = None
    enabled: bool = True
    installed_at: Optional[datetime] = None
    last_verified_hash: Optional[str] = None
    last_verified_algorithm: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    available_update: Optional[AvailableUpdate] = None


class IntegrityRecord(BaseModel):
    file_path: str
    checksum: str
    algorithm: str
    file_size: int
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VerificationResult(BaseModel):
    file_path: str
    is_valid: Optional[bool]
    expected: Optional[str] = None
    actual: Optional[str] = None
    algorithm: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class BatchVerifyResult(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    unverifiable: int = 0
    errors: int = 0
    files: List[VerificationResult] = Field(default_factory=list)


class CorruptionAlert(BaseModel):
    file_path: str
    expected: Optional[str] = None
    actual: Optional[str] = None
    algorithm: Optional[str] = None
    first_seen_at: datetime
    last_seen_at: datetime
    alert_count: int = 1


class Watch(BaseModel):
    project_id: str
    mod_name: str
    file_name: Optional[str] = None
    target: ArtifactTarget
    added_at: datetime
    last_checked_at: Optional[datetime] = None

    @property
    def key(self) -> ArtifactTarget:
        return self.target


class FulfillmentRecord(BaseModel):
    project_id: str
    mod_name: str
    target: ArtifactTarget
    version_found: str
    found_at: datetime


class ServerWatchState(BaseModel):
    watches: List[Watch] = Field(default_factory=list)
    last_check: Optional[datetime] = None
    next_check: Optional[datetime] = None
