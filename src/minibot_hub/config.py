"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class MainBotConfig(BaseModel):
    token: str = ""
    username: str = ""
    creator_id: Optional[int] = None  # platform creator, receives platform broadcast progress


class SecurityConfig(BaseModel):
    encryption_key: str  # Fernet key (urlsafe base64, 32 bytes)


class StorageConfig(BaseModel):
    db_path: str = "./data/minibot_hub.db"


class RuntimeConfig(BaseModel):
    startup_delay: float = 2.0  # pause between two bot startups during a sweep
    launch_wait: float = 10.0  # how long a sweep waits for launching bots to become ready
    max_init_attempts: int = 5  # reported by get_status; reset by a forced re-initialization
    handler_timeout: float = 120.0
    ack_delete_after: float = 5.0  # 0 keeps acknowledgements
    max_admins_per_bot: int = 10
    max_broadcast_length: int = 4000


class SessionConfig(BaseModel):
    ttl_seconds: float = 1800.0  # 0 disables expiry
    sweep_interval: int = 60


class BroadcastConfig(BaseModel):
    progress_every: int = Field(default=10, ge=1)
    pause_every: int = Field(default=30, ge=1)
    pause_seconds: float = 1.0


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    main_bot: MainBotConfig = Field(default_factory=MainBotConfig)
    security: SecurityConfig
    storage: StorageConfig = Field(default_factory=StorageConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced as ${data_dir} by other paths
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
