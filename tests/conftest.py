# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from tasktide.config import AppConfig

from .fakes import FakeRuleStore, FakeTaskStore


@pytest.fixture(autouse=True)
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """
    Every test gets its own SQLite file and config file under tmp_path.

    Nothing reads or writes the config.json / tasktide.db next to the package.
    """
    path = tmp_path / "tasktide.db"
    monkeypatch.setenv("TASKTIDE_DB_PATH", str(path))
    monkeypatch.setenv("TASKTIDE_CONFIG", str(tmp_path / "config.json"))
    return path


@pytest.fixture()
def config() -> AppConfig:
    cfg = AppConfig(default_owner_id="alice", scheduler_enabled=False)
    cfg.save()
    return cfg


@pytest.fixture()
def client(config: AppConfig) -> TestClient:
    from tasktide.web_app import app

    return TestClient(app)


@pytest.fixture()
def task_store() -> FakeTaskStore:
    return FakeTaskStore()


@pytest.fixture()
def rule_store() -> FakeRuleStore:
    return FakeRuleStore()
