"""
Agent configuration and sync checkpoint.

Stored as YAML at ~/.cap-agent/config.yaml (override with CAP_CONFIG_PATH).
The file also holds the sync checkpoint (``last_sync``), which only the sync
orchestrator advances, and only after the store accepted a batch.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from active_time import DEFAULT_TIMEZONE, FALLBACK_ACTIVE_RATIO, IDLE_GAP_MINUTES
from git_log import GIT_TIMEOUT_SECONDS, MAX_OUTPUT_BYTES

AGENT_VERSION = "0.3.0"

CONFIG_DIR = Path.home() / ".cap-agent"
CONFIG_PATH = CONFIG_DIR / "config.yaml"

# Environment variable -> config field
ENV_OVERRIDES = {
    "CAP_SERVER_URL": "server_url",
    "CAP_API_KEY": "api_key",
    "CAP_TIMEZONE": "timezone",
}


class ConfigError(Exception):
    """Configuration is missing or invalid."""


@dataclass
class AgentConfig:
    server_url: str
    api_key: str
    developer_email: str = ""
    claude_data_dirs: list[str] = field(default_factory=lambda: ["~/.claude/projects"])
    projects_dir: str | None = "~/projects"
    exclude_paths: list[str] = field(default_factory=list)
    timezone: str = DEFAULT_TIMEZONE
    idle_gap_minutes: int = IDLE_GAP_MINUTES
    fallback_active_ratio: float = FALLBACK_ACTIVE_RATIO
    git_timeout_seconds: float = GIT_TIMEOUT_SECONDS
    git_max_output_bytes: int = MAX_OUTPUT_BYTES
    last_sync: str | None = None
    last_config_version: int | None = None
    # Fields replaced by environment variables, mapped to their file values
    # (None when the file lacked them). Never written back.
    env_shadowed: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        """Build from a YAML mapping, ignoring unknown keys."""
        data = dict(data)
        # Older config files carried a single transcript directory
        legacy_dir = data.pop("claude_data_dir", None)
        if legacy_dir and not data.get("claude_data_dirs"):
            data["claude_data_dirs"] = [legacy_dir]

        # Unquoted timestamps in hand-edited YAML load as datetime objects
        if isinstance(data.get("last_sync"), datetime):
            data["last_sync"] = data["last_sync"].isoformat()

        known = {f.name for f in fields(cls)} - {"env_shadowed"}
        missing = [name for name in ("server_url", "api_key") if not data.get(name)]
        if missing:
            raise ConfigError(f"Missing required config keys: {', '.join(missing)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        """Persistable values: environment overrides revert to the file's own."""
        data = asdict(self)
        del data["env_shadowed"]
        for key, file_value in self.env_shadowed.items():
            if file_value is None:
                data.pop(key, None)
            else:
                data[key] = file_value
        return data

    def last_sync_datetime(self) -> datetime | None:
        """Checkpoint as an aware datetime, or None if never synced."""
        if not self.last_sync:
            return None
        try:
            dt = datetime.fromisoformat(self.last_sync.replace("Z", "+00:00"))
        except ValueError as e:
            raise ConfigError(f"Invalid last_sync value: {self.last_sync!r}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt


def config_path() -> Path:
    env = os.environ.get("CAP_CONFIG_PATH")
    return Path(env).expanduser() if env else CONFIG_PATH


def validate_config(config: AgentConfig) -> None:
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone: {config.timezone!r}") from e
    if config.idle_gap_minutes <= 0:
        raise ConfigError("idle_gap_minutes must be positive")
    if not 0 < config.fallback_active_ratio <= 1:
        raise ConfigError("fallback_active_ratio must be in (0, 1]")


def load_config(path: Path | None = None) -> AgentConfig:
    """Read the config file and apply environment overrides.

    Raises:
        ConfigError: File missing, unparseable, or invalid.
    """
    path = path or config_path()
    data: dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} does not contain a mapping")
    elif not any(os.environ.get(env) for env in ENV_OVERRIDES):
        raise ConfigError(f"No config found at {path}. Run 'cap init' first.")

    shadowed: dict[str, Any] = {}
    for env, key in ENV_OVERRIDES.items():
        value = os.environ.get(env)
        if value:
            shadowed[key] = data.get(key)
            data[key] = value

    config = AgentConfig.from_dict(data)
    config.env_shadowed = shadowed
    validate_config(config)
    return config


def save_config(config: AgentConfig, path: Path | None = None) -> Path:
    """Write the config file, readable only by the owner (it holds the API key).

    Values that came from environment variables are not written; the file
    keeps what it had for those keys.
    """
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    os.chmod(tmp, 0o600)
    tmp.replace(path)
    return path
