import sqlite3
from pathlib import Path

import pytest

import tutor.config as config_module
from tutor.bootstrap import BootstrapError, Bootstrapper
from tutor.config import AppConfig


def _config(tmp_path: Path) -> AppConfig:
    storage_root = tmp_path / "storage"
    return AppConfig(
        storage_root=storage_root,
        database_file=storage_root / "sessions.db",
        scratch_root=storage_root / "_scratch",
    )


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    config = _config(tmp_path)
    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == config.storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "storage" in str(excinfo.value).lower()


def test_bootstrapper_creates_schema_and_clears_stale_scratch(tmp_path: Path) -> None:
    config = _config(tmp_path)
    stale = config.scratch_root / "sess_1_learner_deadbeef"
    stale.mkdir(parents=True)
    (stale / "mix.mp3").write_bytes(b"partial")

    Bootstrapper(config).initialize()

    assert config.blob_root.is_dir()
    assert list(config.scratch_root.iterdir()) == []
    with sqlite3.connect(config.database_file) as connection:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert "sessions" in tables
