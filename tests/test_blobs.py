from __future__ import annotations

from pathlib import Path

import pytest

from tutor.errors import NotFound, StorageError
from tutor.services.blobs import LocalBlobStore


def test_append_block_grows_blob_and_records_content_type(blob_store: LocalBlobStore) -> None:
    name = "learner/sess_1/session_user.webm"

    assert not blob_store.exists(name)
    assert blob_store.append_block(name, b"abc", content_type="audio/webm") == 3
    assert blob_store.append_block(name, b"defg") == 7

    properties = blob_store.get_properties(name)
    assert properties.size == 7
    assert properties.content_type == "audio/webm"


def test_upload_and_download_round_trip(blob_store: LocalBlobStore, tmp_path: Path) -> None:
    source = tmp_path / "mix.mp3"
    source.write_bytes(b"mixed-audio")
    blob_store.upload_file(source, "learner/sess_1/session_mix.mp3", "audio/mpeg")

    target = tmp_path / "out" / "copy.mp3"
    blob_store.download_to_file("learner/sess_1/session_mix.mp3", target)

    assert target.read_bytes() == b"mixed-audio"
    assert blob_store.get_properties("learner/sess_1/session_mix.mp3").content_type == "audio/mpeg"
    assert not list(blob_store.root.rglob("*.partial"))


def test_missing_blob_raises_not_found(blob_store: LocalBlobStore, tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        blob_store.get_properties("learner/sess_1/missing.mp3")
    with pytest.raises(NotFound):
        blob_store.download_to_file("learner/sess_1/missing.mp3", tmp_path / "x")


@pytest.mark.parametrize("name", ["../escape.mp3", "/etc/passwd", ".meta/learner.json"])
def test_invalid_names_are_rejected(blob_store: LocalBlobStore, name: str) -> None:
    with pytest.raises(StorageError):
        blob_store.exists(name)


def test_delete_reports_whether_blob_existed(blob_store: LocalBlobStore) -> None:
    blob_store.append_block("learner/sess_1/session_bot.mp3", b"x")

    assert blob_store.delete("learner/sess_1/session_bot.mp3") is True
    assert blob_store.delete("learner/sess_1/session_bot.mp3") is False
    assert not blob_store.exists("learner/sess_1/session_bot.mp3")


def test_file_events_are_emitted(tmp_path: Path) -> None:
    events = []
    store = LocalBlobStore(
        tmp_path / "blobs",
        event_emitter=lambda event_type, message, **kwargs: events.append((event_type, message, kwargs)),
    )
    store.append_block("learner/sess_1/a.webm", b"abc")

    assert events[0][0] == "FILE_OP"
    assert events[0][1] == "append_block"
    assert events[0][2]["payload"]["size"] == 3
