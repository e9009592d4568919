"""Unified configuration via pydantic-settings."""

from pathlib import Path
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class LivehubConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LIVEHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Reconnect policy
    reconnect_base_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 300.0
    reconnect_max_attempts: int = 10
    reconnect_jitter: float = 0.1

    # Event sources
    adapter_timeout_seconds: float = 15.0
    adapter_factory: str | None = None  # "package.module:callable"
    max_rooms: int = 0  # 0 = unlimited

    # Plugins
    # Comma-separated in the environment, parsed by parse_plugin_dirs
    plugin_dirs: Annotated[list[Path], NoDecode] = []
    load_builtin_plugins: bool = True
    plugin_init_timeout_seconds: float = 10.0
    plugin_cleanup_timeout_seconds: float = 5.0
    plugin_message_timeout_seconds: float = 5.0
    max_popups_per_plugin: int = 3
    plugin_fault_threshold: int = 0  # 0 = never suspend

    # Bridge
    projection_refresh_seconds: float = 5.0  # 0 disables the periodic refresh
    max_message_bytes: int = 1_048_576
    bridge_rate_limit_per_second: float = 100.0
    bridge_rate_limit_burst: int = 100
    bridge_channel_capacity: int = 1000  # pending envelopes per channel, oldest dropped

    # Logging
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_max_bytes: int = 10_485_760
    log_backup_count: int = 5

    @field_validator("plugin_dirs", mode="before")
    @classmethod
    def parse_plugin_dirs(cls, v: list[Path] | str | Path) -> list[Path]:
        if isinstance(v, Path):
            return [v]
        if isinstance(v, str):
            return [Path(p.strip()) for p in v.split(",") if p.strip()]
        return v

    @field_validator("plugin_dirs")
    @classmethod
    def expand_plugin_dirs(cls, v: list[Path]) -> list[Path]:
        return [p.expanduser() for p in v]

    @field_validator(
        "adapter_timeout_seconds",
        "plugin_init_timeout_seconds",
        "plugin_cleanup_timeout_seconds",
        "plugin_message_timeout_seconds",
        "reconnect_base_delay_seconds",
        "reconnect_max_delay_seconds",
        "bridge_channel_capacity",
    )
    @classmethod
    def require_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("reconnect_jitter")
    @classmethod
    def check_jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("reconnect_jitter must be between 0 and 1")
        return v

    @field_validator("reconnect_max_attempts", "max_rooms", "plugin_fault_threshold")
    @classmethod
    def reject_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v
