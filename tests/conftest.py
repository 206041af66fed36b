from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tutor.bootstrap import Bootstrapper
from tutor.config import AppConfig
from tutor.services.blobs import LocalBlobStore
from tutor.services.storage import SessionRepository


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/sessions.db\",\n
            \"scratch_root\": \"storage/_scratch\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/sessions.db",
            "scratch_root": "storage/_scratch",
            "jwt_secret": "test-secret",
            "mix_engine": "numpy",
            "ready_retries": 3,
            "ready_delay_seconds": 0,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> SessionRepository:
    return SessionRepository(temp_config)


@pytest.fixture()
def blob_store(temp_config: AppConfig) -> LocalBlobStore:
    return LocalBlobStore(temp_config.blob_root)
