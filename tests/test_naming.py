import re

import pytest

from tutor.services.naming import (
    build_blob_name,
    detect_user_audio_format,
    mixed_audio_artifact,
    new_session_id,
    resolve_audio_ref,
)


def test_session_id_shape() -> None:
    session_id = new_session_id("learner-1", now_ms=1700000000000)

    assert re.fullmatch(r"sess_1700000000000_learner-1_[0-9a-f]{8}", session_id)
    assert new_session_id("learner-1") != new_session_id("learner-1")


@pytest.mark.parametrize(
    "agent, expected",
    [
        ("Mozilla/5.0 (Macintosh) AppleWebKit/605.1.15 Version/17.0 Safari/605.1.15", "mp4"),
        ("Mozilla/5.0 (Windows NT 10.0) AppleWebKit/537.36 Chrome/120.0 Safari/537.36", "webm"),
        ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", "webm"),
        (None, "webm"),
    ],
)
def test_detect_user_audio_format(agent, expected) -> None:
    assert detect_user_audio_format(agent) == expected


def test_blob_names_live_below_the_session_prefix() -> None:
    assert build_blob_name("u1", "sess_1", "session_bot.mp3") == "u1/sess_1/session_bot.mp3"
    assert mixed_audio_artifact(".mp3") == "session_mix.mp3"


def test_resolve_audio_ref() -> None:
    assert resolve_audio_ref("u1", "sess_1", "bot.mp3") == "u1/sess_1/bot.mp3"
    assert resolve_audio_ref("u1", "sess_1", "u1/sess_1/bot.mp3") == "u1/sess_1/bot.mp3"
    with pytest.raises(ValueError):
        resolve_audio_ref("u1", "sess_1", "u2/sess_9/bot.mp3")
    with pytest.raises(ValueError):
        resolve_audio_ref("u1", "sess_1", "  ")
