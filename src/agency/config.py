"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Config:
    agency_dir: Path = field(default_factory=lambda: Path.cwd())
    data_dir: Path = field(default_factory=lambda: Path.home() / ".agency")
    db_path: Path | None = None
    projects_dir: Path = field(default_factory=lambda: Path.cwd())
    orchestration_interval_ms: int = 10_000
    auto_orchestrate: bool = False
    claude_bin: str = "claude"
    mcp_config_path: Path | None = None
    host: str = "127.0.0.1"
    port: int = 3000
    log_level: str = "INFO"

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.data_dir / "agency.db"

    @property
    def api_url(self) -> str:
        return f"http://{self.host}:{self.port}/api"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if agency_dir := os.environ.get("AGENCY_DIR"):
            config.agency_dir = Path(agency_dir)

        if data_dir := os.environ.get("AGENCY_DATA_DIR"):
            config.data_dir = Path(data_dir)
            config.db_path = config.data_dir / "agency.db"

        if db := os.environ.get("AGENCY_DB_PATH"):
            config.db_path = Path(db)

        if projects := os.environ.get("AGENCY_PROJECTS_DIR"):
            config.projects_dir = Path(projects)

        if interval := os.environ.get("AGENCY_ORCHESTRATION_INTERVAL_MS"):
            config.orchestration_interval_ms = int(interval)

        if auto := os.environ.get("AGENCY_AUTO_ORCHESTRATE"):
            config.auto_orchestrate = auto.strip().lower() in _TRUTHY

        if claude_bin := os.environ.get("AGENCY_CLAUDE_BIN"):
            config.claude_bin = claude_bin

        if mcp_config := os.environ.get("AGENCY_MCP_CONFIG"):
            config.mcp_config_path = Path(mcp_config)
        else:
            candidate = config.projects_dir / ".mcp.json"
            if candidate.exists():
                config.mcp_config_path = candidate

        if host := os.environ.get("AGENCY_HOST"):
            config.host = host

        if port := os.environ.get("AGENCY_PORT"):
            config.port = int(port)

        if level := os.environ.get("AGENCY_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
