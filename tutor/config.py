"""Configuration loading utilities for the Sprach Tutor backend."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".sprach_tutor_write_check"

_ENVIRONMENT_OVERRIDES: Tuple[Tuple[str, str], ...] = (
    ("TUTOR_JWT_SECRET", "jwt_secret"),
    ("TUTOR_FUNCTIONS_KEY", "functions_key"),
    ("TUTOR_MIX_TRIGGER_URL", "mix_trigger_url"),
    ("TUTOR_FFMPEG_BINARY", "ffmpeg_binary"),
    ("TUTOR_MIX_ENGINE", "mix_engine"),
)

MIX_ENGINE_OPTIONS: Tuple[str, ...] = ("ffmpeg", "numpy")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins and the flag reports whether a fallback
    was used. When nothing can be prepared ``preferred`` is returned so the
    bootstrapper can report the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_positive_int(value: Any, *, name: str, default: int) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Configuration value '{name}' must be an integer") from error
    if number < 1:
        raise ValueError(f"Configuration value '{name}' must be at least 1")
    return number


def _coerce_non_negative_float(value: Any, *, name: str, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Configuration value '{name}' must be a number") from error
    if number < 0:
        raise ValueError(f"Configuration value '{name}' must not be negative")
    return number


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and tunables for the recorder and the mixer."""

    storage_root: Path
    database_file: Path
    scratch_root: Path
    jwt_secret: str = "change-me"
    functions_key: Optional[str] = None
    mix_trigger_url: Optional[str] = None
    mix_engine: str = "ffmpeg"
    ffmpeg_binary: str = "ffmpeg"
    ready_retries: int = 10
    ready_delay_seconds: float = 3.0
    mix_timeout_seconds: float = 300.0
    mix_bitrate: str = "128k"
    transcode_formats: Tuple[str, ...] = ("mp4",)
    mix_max_attempts: int = 3

    @property
    def blob_root(self) -> Path:
        """Location of the filesystem-backed object storage."""

        return (self.storage_root / "blobs").resolve()

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".sprach_tutor" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        preferred_scratch = (base_path / mapping.get("scratch_root", "scratch")).resolve()
        scratch_root, _ = _select_writable_directory(
            preferred_scratch,
            label="scratch",
            fallbacks=(storage_root / "_scratch",),
        )

        mix_engine = str(mapping.get("mix_engine") or "ffmpeg").strip().lower()
        if mix_engine not in MIX_ENGINE_OPTIONS:
            raise ValueError(
                f"Unknown mix engine '{mix_engine}'. Expected one of: {', '.join(MIX_ENGINE_OPTIONS)}"
            )

        transcode_formats = tuple(
            str(item).strip().lower()
            for item in mapping.get("transcode_formats", ("mp4",))
            if str(item).strip()
        )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            scratch_root=scratch_root,
            jwt_secret=str(mapping.get("jwt_secret") or "change-me"),
            functions_key=mapping.get("functions_key") or None,
            mix_trigger_url=mapping.get("mix_trigger_url") or None,
            mix_engine=mix_engine,
            ffmpeg_binary=str(mapping.get("ffmpeg_binary") or "ffmpeg"),
            ready_retries=_coerce_positive_int(
                mapping.get("ready_retries"), name="ready_retries", default=10
            ),
            ready_delay_seconds=_coerce_non_negative_float(
                mapping.get("ready_delay_seconds"), name="ready_delay_seconds", default=3.0
            ),
            mix_timeout_seconds=_coerce_non_negative_float(
                mapping.get("mix_timeout_seconds"), name="mix_timeout_seconds", default=300.0
            ),
            mix_bitrate=str(mapping.get("mix_bitrate") or "128k"),
            transcode_formats=transcode_formats,
            mix_max_attempts=_coerce_positive_int(
                mapping.get("mix_max_attempts"), name="mix_max_attempts", default=3
            ),
        )


def _apply_environment_overrides(mapping: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(mapping)
    for variable, key in _ENVIRONMENT_OVERRIDES:
        value = (os.environ.get(variable) or "").strip()
        if value:
            LOGGER.debug("Overriding configuration key '%s' from %s", key, variable)
            merged[key] = value
    return merged


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(_apply_environment_overrides(raw_config), base_path=base_path)


__all__ = ["AppConfig", "MIX_ENGINE_OPTIONS", "load_config"]
