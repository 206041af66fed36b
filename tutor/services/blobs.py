"""Object storage for session audio, backed by the local filesystem."""

from __future__ import annotations

import contextlib
import json
import logging
import mimetypes
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

from ..errors import NotFound, StorageError


LOGGER = logging.getLogger(__name__)

_META_DIR_NAME = ".meta"
_DEFAULT_COPY_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class BlobProperties:
    name: str
    size: int
    content_type: str


class BlobStore(Protocol):
    """Operations the recorder and the mixer need from object storage."""

    def exists(self, name: str) -> bool: ...

    def get_properties(self, name: str) -> BlobProperties: ...

    def download_to_file(self, name: str, local_path: Path) -> None: ...

    def upload_file(self, local_path: Path, name: str, content_type: str) -> None: ...

    def append_block(self, name: str, data: bytes, *, content_type: Optional[str] = None) -> int: ...

    def delete(self, name: str) -> bool: ...


class LocalBlobStore:
    """Blob store keeping each blob as a file below *root*.

    Blob names use ``/`` separators and map directly onto the directory tree.
    Content types live in JSON sidecars under ``.meta`` so listings of the
    blob tree stay clean.
    """

    def __init__(
        self,
        root: Path,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._event_emitter = event_emitter

    @property
    def root(self) -> Path:
        return self._root

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_file_event(self, operation: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        event_payload: Dict[str, Any] = dict(payload)
        if self._event_emitter is None:
            yield event_payload
            return
        start = time.perf_counter()
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            self._event_emitter(
                "FILE_OP",
                operation,
                payload={key: value for key, value in event_payload.items() if value is not None},
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )

    def _resolve(self, name: str, *, base: Optional[Path] = None) -> Path:
        pure = PurePosixPath(str(name).strip())
        if not pure.parts or pure.is_absolute() or ".." in pure.parts:
            raise StorageError(f"Invalid blob name: {name!r}")
        if pure.parts[0] == _META_DIR_NAME:
            raise StorageError(f"Invalid blob name: {name!r}")
        return (base or self._root).joinpath(*pure.parts)

    def _meta_path(self, name: str) -> Path:
        target = self._resolve(name, base=self._root / _META_DIR_NAME)
        return target.with_name(target.name + ".json")

    def _write_content_type(self, name: str, content_type: str) -> None:
        meta_path = self._meta_path(name)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({"content_type": content_type}), encoding="utf-8")

    def _read_content_type(self, name: str) -> str:
        meta_path = self._meta_path(name)
        try:
            stored = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}
        content_type = stored.get("content_type") if isinstance(stored, dict) else None
        if content_type:
            return str(content_type)
        guessed, _ = mimetypes.guess_type(name)
        return guessed or "application/octet-stream"

    # ------------------------------------------------------------------
    # Blob operations
    # ------------------------------------------------------------------
    def exists(self, name: str) -> bool:
        return self._resolve(name).is_file()

    def get_properties(self, name: str) -> BlobProperties:
        path = self._resolve(name)
        try:
            size = path.stat().st_size
        except FileNotFoundError as error:
            raise NotFound(f"Blob {name} not found") from error
        except OSError as error:
            raise StorageError(f"Could not stat blob {name}: {error}") from error
        return BlobProperties(name=name, size=int(size), content_type=self._read_content_type(name))

    def download_to_file(self, name: str, local_path: Path) -> None:
        source = self._resolve(name)
        target = Path(local_path)
        with self._track_file_event("download_to_file", blob=name, target=target) as event:
            if not source.is_file():
                raise NotFound(f"Blob {name} not found")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with source.open("rb") as reader, target.open("wb") as writer:
                    shutil.copyfileobj(reader, writer, length=_DEFAULT_COPY_CHUNK_SIZE)
            except OSError as error:
                raise StorageError(f"Could not download blob {name}: {error}") from error
            event["bytes"] = target.stat().st_size
        LOGGER.debug("Downloaded blob %s to %s", name, target)

    def upload_file(self, local_path: Path, name: str, content_type: str) -> None:
        source = Path(local_path)
        target = self._resolve(name)
        with self._track_file_event("upload_file", blob=name, source=source) as event:
            partial = target.with_name(target.name + ".partial")
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with source.open("rb") as reader, partial.open("wb") as writer:
                    shutil.copyfileobj(reader, writer, length=_DEFAULT_COPY_CHUNK_SIZE)
                os.replace(partial, target)
                self._write_content_type(name, content_type)
            except OSError as error:
                with contextlib.suppress(OSError):
                    partial.unlink()
                raise StorageError(f"Could not upload blob {name}: {error}") from error
            event["bytes"] = target.stat().st_size
        LOGGER.debug("Uploaded %s to blob %s (%s)", source, name, content_type)

    def append_block(self, name: str, data: bytes, *, content_type: Optional[str] = None) -> int:
        """Append *data* to the blob, creating it when missing; return the new size."""

        target = self._resolve(name)
        with self._track_file_event("append_block", blob=name, bytes=len(data)) as event:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with target.open("ab") as writer:
                    writer.write(data)
                if content_type:
                    self._write_content_type(name, content_type)
                size = target.stat().st_size
            except OSError as error:
                raise StorageError(f"Could not append to blob {name}: {error}") from error
            event["size"] = size
        return int(size)

    def delete(self, name: str) -> bool:
        target = self._resolve(name)
        with self._track_file_event("delete", blob=name) as event:
            try:
                target.unlink()
            except FileNotFoundError:
                event["found"] = False
                return False
            except OSError as error:
                raise StorageError(f"Could not delete blob {name}: {error}") from error
            with contextlib.suppress(OSError):
                self._meta_path(name).unlink()
            event["found"] = True
            return True


__all__ = ["BlobProperties", "BlobStore", "LocalBlobStore"]
