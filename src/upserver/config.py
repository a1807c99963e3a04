"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from upserver.core.ports import validate_port_settings


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".upserver" / "upserver.db")
    sites_dir: Path = field(default_factory=lambda: Path.home() / "upserver" / "sites")
    staging_host: str = "127.0.0.1"
    port_range_start: int = 3000
    port_range_end: int = 3100
    devtools_port: int = 42069
    idle_timeout_minutes: int = 30
    cleanup_interval: float = 300.0
    ready_timeout: float = 20.0
    install_timeout: float = 600.0
    stop_timeout: float = 10.0
    wide_change_threshold: int = 8
    agent_model: str = "claude-haiku-4-5-20251001"
    agent_max_turns: int = 25
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("UPS_DB_PATH"):
            config.db_path = Path(db)

        if sites := os.environ.get("UPS_SITES_DIR"):
            config.sites_dir = Path(sites)

        if host := os.environ.get("UPS_STAGING_HOST"):
            config.staging_host = host

        if start := os.environ.get("UPS_PORT_RANGE_START"):
            config.port_range_start = int(start)

        if end := os.environ.get("UPS_PORT_RANGE_END"):
            config.port_range_end = int(end)

        if devtools := os.environ.get("TANSTACK_DEVTOOLS_PORT"):
            config.devtools_port = int(devtools)

        if idle := os.environ.get("UPS_IDLE_TIMEOUT_MINUTES"):
            config.idle_timeout_minutes = int(idle)

        if interval := os.environ.get("UPS_CLEANUP_INTERVAL_SECONDS"):
            config.cleanup_interval = float(interval)

        if ready := os.environ.get("UPS_READY_TIMEOUT_SECONDS"):
            config.ready_timeout = float(ready)

        if install := os.environ.get("UPS_INSTALL_TIMEOUT_SECONDS"):
            config.install_timeout = float(install)

        if stop := os.environ.get("UPS_STOP_TIMEOUT_SECONDS"):
            config.stop_timeout = float(stop)

        if threshold := os.environ.get("UPS_WIDE_CHANGE_THRESHOLD"):
            config.wide_change_threshold = int(threshold)

        if model := os.environ.get("UPS_AGENT_MODEL"):
            config.agent_model = model

        if turns := os.environ.get("UPS_AGENT_MAX_TURNS"):
            config.agent_max_turns = int(turns)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("UPS_SLACK_CHANNEL")

        validate_port_settings(config.port_range_start, config.port_range_end)
        return config

    def site_path(self, site_folder: str) -> Path:
        return self.sites_dir / site_folder


def get_config() -> Config:
    return Config.from_env()
