from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ModkeeperError

DEFAULT_CONFIG_FILENAME = ".modkeeper.json"
DEFAULT_ENV_FILENAME = ".env"
DEFAULT_DATA_DIR = Path("data")
DEFAULT_LOG_FILE = Path(".modkeeper/modkeeper.log")
DEFAULT_REGISTRY_URL = "https://api.modrinth.com/v2"
DEFAULT_USER_AGENT = "modkeeper/dev"
ALLOWED_WATCH_INTERVALS = (12, 24)

USER_CONFIG_DIR = Path.home() / ".config" / "modkeeper"
USER_CONFIG_FILENAME = "config.json"
USER_CONFIG_PATH = USER_CONFIG_DIR / USER_CONFIG_FILENAME


class ConfigError(ModkeeperError):
    """Raised when configuration cannot be loaded."""


class FileConfig(BaseModel):
    name: str = "default-server"
    server_type: str = "FABRIC"
    minecraft_version: str = "1.21.1"
    data_dir: Optional[Path] = None
    log_file: Optional[Path] = None
    api_user_agent: Optional[str] = None
    registry_url: Optional[str] = None
    download_timeout: Optional[float] = None
    watch_interval_hours: Optional[int] = None
    history_limit: Optional[int] = None


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MODKEEPER_", extra="ignore")

    server_root: Optional[Path] = None
    data_dir: Optional[Path] = None
    log_file: Optional[Path] = None
    log_level: Optional[str] = None
    api_user_agent: Optional[str] = None
    registry_url: Optional[str] = None
    download_timeout: Optional[float] = None
    watch_interval_hours: Optional[int] = None


class ModkeeperConfig(BaseModel):
    server_root: Path
    data_dir: Path
    log_file: Path
    name: str
    server_type: str
    minecraft_version: str
    api_user_agent: str
    registry_url: str = DEFAULT_REGISTRY_URL
    download_timeout: float = Field(default=60.0, gt=0)
    watch_interval_hours: int = 12
    watch_tick_seconds: float = Field(default=300.0, gt=0)
    history_limit: int = Field(default=200, gt=0)
    error_log_max: int = Field(default=10_000, gt=0)
    error_retention_days: int = Field(default=7, gt=0)
    log_level: str = "INFO"

    @property
    def state_dir(self) -> Path:
        return self.server_root / ".modkeeper"


class UserConfig(BaseModel):
    server_root: Optional[Path] = None


def _coerce_path(base: Path, value: Path | str) -> Path:
    path = value if isinstance(value, Path) else Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def load_user_config() -> UserConfig:
    if not USER_CONFIG_PATH.exists():
        return UserConfig()
    try:
        data = json.loads(USER_CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:  # pragma: no cover - config errors are user-facing
        raise ConfigError(f"Invalid JSON in {USER_CONFIG_PATH}: {exc}") from exc
    return UserConfig(**data)


def save_user_config(cfg: UserConfig) -> Path:
    USER_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_PATH.write_text(cfg.model_dump_json(indent=2))
    return USER_CONFIG_PATH


def _resolve_initial_root(root: Path | None, user_cfg: UserConfig) -> Path:
    if root is not None:
        return Path(root).expanduser().resolve()

    cwd = Path.cwd().resolve()
    if (cwd / DEFAULT_CONFIG_FILENAME).exists():
        return cwd

    if user_cfg.server_root is not None:
        return Path(user_cfg.server_root).expanduser().resolve()

    return cwd


def _load_file_config(path: Path) -> FileConfig:
    if not path.exists():
        raise ConfigError(
            f"Could not find {path.name}. Run modkeeper from your server root or pass --root."
        )
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:  # pragma: no cover - config errors are user-facing
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    return FileConfig(**data)


def _validate_interval(hours: int) -> int:
    if hours not in ALLOWED_WATCH_INTERVALS:
        allowed = " or ".join(str(value) for value in ALLOWED_WATCH_INTERVALS)
        raise ConfigError(f"watch_interval_hours must be {allowed}, got {hours}.")
    return hours


def load_config(root: Path | None = None) -> ModkeeperConfig:
    """Load configuration from env + .modkeeper.json."""

    user_cfg = load_user_config()
    server_root = _resolve_initial_root(root, user_cfg)
    env_file = server_root / DEFAULT_ENV_FILENAME
    env_settings = EnvSettings(
        _env_file=env_file if env_file.exists() else None,
    )

    if env_settings.server_root:
        server_root = _coerce_path(server_root, env_settings.server_root)

    file_config_path = server_root / DEFAULT_CONFIG_FILENAME
    file_cfg = _load_file_config(file_config_path)

    data_dir = env_settings.data_dir or file_cfg.data_dir or DEFAULT_DATA_DIR
    log_file = env_settings.log_file or file_cfg.log_file or DEFAULT_LOG_FILE
    api_user_agent = env_settings.api_user_agent or file_cfg.api_user_agent or DEFAULT_USER_AGENT
    registry_url = env_settings.registry_url or file_cfg.registry_url or DEFAULT_REGISTRY_URL
    download_timeout = env_settings.download_timeout or file_cfg.download_timeout or 60.0
    interval = _validate_interval(
        env_settings.watch_interval_hours or file_cfg.watch_interval_hours or ALLOWED_WATCH_INTERVALS[0]
    )

    return ModkeeperConfig(
        server_root=server_root,
        data_dir=_coerce_path(server_root, data_dir),
        log_file=_coerce_path(server_root, log_file),
        name=file_cfg.name,
        server_type=file_cfg.server_type,
        minecraft_version=file_cfg.minecraft_version,
        api_user_agent=api_user_agent,
        registry_url=registry_url.rstrip("/"),
        download_timeout=download_timeout,
        watch_interval_hours=interval,
        history_limit=file_cfg.history_limit or 200,
        log_level=(env_settings.log_level or "INFO").upper(),
    )
