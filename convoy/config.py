"""
Convoy - Configuration Management

Handles loading config.json, environment variables and path resolution.
Config is stored in ~/.config/convoy/config.json; every field has a default
so the file is optional.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from convoy.exceptions import ConfigError


# Configuration paths
CONFIG_DIR = Path.home() / ".config" / "convoy"
CONFIG_FILE = CONFIG_DIR / "config.json"
DEFAULT_STORAGE_ROOT = Path.home() / ".local" / "share" / "convoy"

# Environment variable -> config field
ENV_OVERRIDES = {
    "CONVOY_STORAGE_ROOT": "storage_root",
    "CONVOY_APP_ROOT": "app_root",
    "CONVOY_PROJECTS_DIRECTORY": "projects_directory",
    "CONVOY_CLAUDE_WRAPPER": "wrapper_path",
    "CONVOY_PROCESS_PATH": "process_path",
}


@dataclass
class ConvoyConfig:
    """Main configuration container for Convoy."""

    # Root of the key-path-addressable storage (sessions, repositories, db)
    storage_root: Path = field(default_factory=lambda: DEFAULT_STORAGE_ROOT)
    # Fallback working directory for the CLI and home of the wrapper script
    app_root: Path = field(default_factory=Path.cwd)

    # Storage-relative unless absolute
    repositories_directory: str = "repositories"
    projects_directory: str = "repositories"
    blank_project_directory: str = "repositories/base"
    sessions_directory: str = "claude-sessions"

    wrapper_path: str = "claude-wrapper.sh"
    db_filename: str = "convoy.db"

    # Timeouts (seconds)
    git_timeout: int = 60
    deploy_timeout: int = 300
    process_ttl: int = 3600
    session_lock_timeout: float = 10.0
    settle_delay: float = 1.0
    terminate_grace: float = 0.5

    # Explicit environment for spawned processes
    process_path: str = "/usr/local/bin:/usr/bin:/bin"

    def __post_init__(self) -> None:
        self.storage_root = Path(self.storage_root).expanduser()
        self.app_root = Path(self.app_root).expanduser()

    def resolve_path(self, path: str | Path) -> Path:
        """Absolute paths pass through, relative ones resolve against storage."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.storage_root / candidate

    @property
    def repositories_root(self) -> Path:
        return self.resolve_path(self.repositories_directory)

    @property
    def base_root(self) -> Path:
        """Directory holding one base checkout per repository."""
        return self.repositories_root / "base"

    @property
    def hot_root(self) -> Path:
        """Directory holding the pre-warmed copies."""
        return self.repositories_root / "hot"

    @property
    def blank_root(self) -> Path:
        """Shared working directory for blank-repository conversations."""
        return self.resolve_path(self.blank_project_directory)

    @property
    def db_path(self) -> Path:
        return self.storage_root / self.db_filename

    @property
    def wrapper(self) -> str:
        """Wrapper executable, resolved against the app root when relative."""
        wrapper = Path(self.wrapper_path).expanduser()
        if wrapper.is_absolute():
            return str(wrapper)
        return str(self.app_root / wrapper)

    def base_path(self, repository: str) -> Path:
        return self.base_root / repository

    def hot_path(self, repository: str) -> Path:
        return self.hot_root / repository

    def process_env(self) -> dict[str, str]:
        """Minimal environment for the CLI and deploy scripts."""
        home = os.environ.get("HOME", str(Path.home()))
        return {
            "PATH": self.process_path,
            "HOME": home,
            "USER": os.environ.get("USER", Path(home).name),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = str(value) if isinstance(value, Path) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConvoyConfig":
        """Create config from dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                "Unknown configuration keys",
                {"keys": sorted(unknown)},
            )
        return cls(**data)


def ensure_config_dir() -> None:
    """Ensure configuration directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


def load_config(config_file: Path | None = None) -> ConvoyConfig:
    """
    Load configuration from file and environment.

    Environment variables win over the file.

    Raises:
        ConfigError: If the file is not valid JSON or has unknown keys
    """
    path = config_file or CONFIG_FILE
    data: dict[str, Any] = {}

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(
                f"Invalid JSON in {path}",
                {"error": str(e)},
            )
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a JSON object in {path}")

    for env_key, field_name in ENV_OVERRIDES.items():
        if value := os.environ.get(env_key):
            data[field_name] = value

    return ConvoyConfig.from_dict(data)


def save_config(config: ConvoyConfig, config_file: Path | None = None) -> None:
    """Save configuration to file."""
    ensure_config_dir()
    path = config_file or CONFIG_FILE
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
