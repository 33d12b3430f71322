from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILENAME = ".modman.json"
DEFAULT_ENV_FILENAME = ".env"
DEFAULT_DATABASE = Path("modlist.csv")
DEFAULT_DOWNLOAD_DIR = Path("download")
DEFAULT_API_CACHE_DIR = Path("apiresponse")
DEFAULT_BACKUP_DIR = Path("backups")
DEFAULT_SERVER_DIR = Path("server")
DEFAULT_LOADER = "fabric"
DEFAULT_GAME_VERSION = "1.21.5"
DEFAULT_USER_AGENT = "modman-cli/dev"

MODRINTH_API_BASE = "https://api.modrinth.com/v2"
CURSEFORGE_API_BASE = "https://api.curseforge.com/v1"
MOJANG_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class RconConfig(BaseModel):
    enabled: bool = True
    host: str = Field(default="127.0.0.1", description="RCON host")
    port: int = Field(default=25575, description="RCON port")
    password: str = Field(default="rconpw", description="RCON password")


class FileConfig(BaseModel):
    database: Optional[Path] = None
    download_dir: Optional[Path] = None
    api_cache_dir: Optional[Path] = None
    backup_dir: Optional[Path] = None
    server_dir: Optional[Path] = None
    default_loader: Optional[str] = None
    default_game_version: Optional[str] = None
    api_user_agent: Optional[str] = None
    curseforge_api_key: Optional[str] = None
    max_retries: Optional[int] = None
    retry_backoff: Optional[float] = None
    rcon: Optional[RconConfig] = None
    java_command: Optional[str] = None
    server_memory: Optional[str] = None


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MODMAN_", extra="ignore")

    database: Optional[Path] = None
    download_dir: Optional[Path] = None
    api_cache_dir: Optional[Path] = None
    backup_dir: Optional[Path] = None
    default_loader: Optional[str] = None
    default_game_version: Optional[str] = None
    api_user_agent: Optional[str] = None
    curseforge_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MODMAN_CURSEFORGE_API_KEY", "CURSEFORGE_API_KEY"),
    )
    max_retries: Optional[int] = None
    retry_backoff: Optional[float] = None
    rcon_password: Optional[str] = None
    rcon_port: Optional[int] = None


class ModmanConfig(BaseModel):
    root: Path
    database: Path
    download_dir: Path
    api_cache_dir: Path
    backup_dir: Path
    server_dir: Path
    default_loader: str = DEFAULT_LOADER
    default_game_version: str = DEFAULT_GAME_VERSION
    api_user_agent: str = DEFAULT_USER_AGENT
    curseforge_api_key: Optional[str] = None
    modrinth_api_base: str = MODRINTH_API_BASE
    curseforge_api_base: str = CURSEFORGE_API_BASE
    mojang_manifest_url: str = MOJANG_MANIFEST_URL
    max_retries: int = 3
    retry_backoff: float = 1.0
    request_timeout: float = 30.0
    rcon: RconConfig = Field(default_factory=RconConfig)
    java_command: str = "java"
    server_memory: str = "2G"


def _coerce_path(base: Path, value: Path | str) -> Path:
    path = value if isinstance(value, Path) else Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def default_config(root: Path, **overrides) -> ModmanConfig:
    """Build a configuration rooted at ``root`` using only built-in defaults."""

    root = Path(root).expanduser().resolve()
    values = dict(
        root=root,
        database=root / DEFAULT_DATABASE,
        download_dir=root / DEFAULT_DOWNLOAD_DIR,
        api_cache_dir=root / DEFAULT_API_CACHE_DIR,
        backup_dir=root / DEFAULT_BACKUP_DIR,
        server_dir=root / DEFAULT_SERVER_DIR,
    )
    values.update(overrides)
    return ModmanConfig(**values)


def _load_file_config(path: Path) -> FileConfig:
    if not path.exists():
        return FileConfig()
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:  # pragma: no cover - config errors are user-facing
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    return FileConfig(**data)


def load_config(root: Path | None = None) -> ModmanConfig:
    """Load configuration from env + .modman.json."""

    root = Path(root).expanduser().resolve() if root is not None else Path.cwd().resolve()
    env_file = root / DEFAULT_ENV_FILENAME
    env_settings = EnvSettings(
        _env_file=env_file if env_file.exists() else None,
    )
    file_cfg = _load_file_config(root / DEFAULT_CONFIG_FILENAME)

    database = env_settings.database or file_cfg.database or DEFAULT_DATABASE
    download_dir = env_settings.download_dir or file_cfg.download_dir or DEFAULT_DOWNLOAD_DIR
    api_cache_dir = env_settings.api_cache_dir or file_cfg.api_cache_dir or DEFAULT_API_CACHE_DIR
    backup_dir = env_settings.backup_dir or file_cfg.backup_dir or DEFAULT_BACKUP_DIR
    server_dir = file_cfg.server_dir or DEFAULT_SERVER_DIR

    rcon_cfg = file_cfg.rcon or RconConfig()
    if env_settings.rcon_password is not None:
        rcon_cfg.password = env_settings.rcon_password
    if env_settings.rcon_port is not None:
        rcon_cfg.port = env_settings.rcon_port

    max_retries = env_settings.max_retries
    if max_retries is None:
        max_retries = file_cfg.max_retries if file_cfg.max_retries is not None else 3
    retry_backoff = env_settings.retry_backoff
    if retry_backoff is None:
        retry_backoff = file_cfg.retry_backoff if file_cfg.retry_backoff is not None else 1.0

    return ModmanConfig(
        root=root,
        database=_coerce_path(root, database),
        download_dir=_coerce_path(root, download_dir),
        api_cache_dir=_coerce_path(root, api_cache_dir),
        backup_dir=_coerce_path(root, backup_dir),
        server_dir=_coerce_path(root, server_dir),
        default_loader=env_settings.default_loader or file_cfg.default_loader or DEFAULT_LOADER,
        default_game_version=(
            env_settings.default_game_version or file_cfg.default_game_version or DEFAULT_GAME_VERSION
        ),
        api_user_agent=env_settings.api_user_agent or file_cfg.api_user_agent or DEFAULT_USER_AGENT,
        curseforge_api_key=env_settings.curseforge_api_key or file_cfg.curseforge_api_key,
        max_retries=max_retries,
        retry_backoff=retry_backoff,
        rcon=rcon_cfg,
        java_command=file_cfg.java_command or "java",
        server_memory=file_cfg.server_memory or "2G",
    )
