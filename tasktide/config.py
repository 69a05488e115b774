"""Configuration load/save for tasktide."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

CONFIG_PATH = Path(__file__).resolve().parent / "config.json"


def config_path() -> Path:
    """Config file location; TASKTIDE_CONFIG overrides the default next to the package."""
    override = (os.environ.get("TASKTIDE_CONFIG") or "").strip()
    return Path(override).expanduser() if override else CONFIG_PATH


class AppConfig(BaseModel):
    """Persisted application configuration."""

    debug: bool = Field(default=False, description="Log every API request")
    web_ui_port: int = Field(default=8081, ge=1, le=65535, description="Port for the HTTP API")
    api_key: str = Field(default="", description="Required X-API-Key header value; empty = API key check disabled")
    database_path: str = Field(default="", description="Path to SQLite database file; empty = package dir / tasktide.db")
    user_timezone: str = Field(default="UTC", description="IANA timezone used to decide what 'today' is")
    default_owner_id: str = Field(default="local", min_length=1, description="Owner id used when a request carries no X-Owner-Id")
    scheduler_enabled: bool = Field(default=True, description="Run the background materialization scheduler")
    materialize_cron: str = Field(default="5 0 * * *", description="5-field cron (min hour day month weekday) in user_timezone")
    scheduler_poll_seconds: float = Field(default=60.0, gt=0, description="How often the scheduler thread wakes up")

    def to_save_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls) -> "AppConfig":
        path = config_path()
        if not path.exists():
            return cls()
        raw = json.loads(path.read_text())
        return cls.model_validate(raw)

    def save(self) -> None:
        config_path().write_text(json.dumps(self.to_save_dict(), indent=2))


def load() -> AppConfig:
    """Load config from disk. Convenience alias for AppConfig.load()."""
    return AppConfig.load()
