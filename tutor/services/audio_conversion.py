"""FFmpeg-backed transcoding, WAV decoding and two-track mixing."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from ..errors import MixFailed, TranscodeFailed


LOGGER = logging.getLogger(__name__)

DEFAULT_PROCESS_TIMEOUT = 300.0
_WAV_MAGIC = b"RIFF"


class AudioTranscoder(Protocol):
    """Converts a track into a codec the mixer engine can consume."""

    transcoded_extension: str

    def transcode(self, source: Path, destination: Path, *, timeout: Optional[float] = None) -> Path: ...


class AudioMixerEngine(Protocol):
    """Combines two tracks into one normalized output file."""

    output_extension: str
    content_type: str

    def mix(self, first: Path, second: Path, destination: Path, *, timeout: Optional[float]) -> Path: ...


def ffmpeg_available(binary: str = "ffmpeg") -> bool:
    """Return ``True`` when *binary* resolves to an executable."""

    return shutil.which(binary) is not None


def is_wav_file(path: Path) -> bool:
    """Return ``True`` when *path* starts with a RIFF header.

    Recorded tracks keep their ``.webm``/``.mp4`` names whatever they hold,
    so the container is sniffed instead of trusting the suffix.
    """

    try:
        with path.open("rb") as handle:
            return handle.read(4) == _WAV_MAGIC
    except OSError:
        return False


def _summarize_failure(completed: subprocess.CompletedProcess) -> str:
    stderr = (completed.stderr or b"").decode("utf-8", errors="ignore").strip()
    stdout = (completed.stdout or b"").decode("utf-8", errors="ignore").strip()
    details = (stderr or stdout or "FFmpeg exited with a non-zero status.").splitlines()
    return details[-1] if details else "Unknown error."


class FFmpegAudioEngine:
    """Transcode, decode and mix through the ``ffmpeg`` command line tool.

    Every invocation is bounded: calls passing ``timeout=None`` fall back to
    ``default_timeout``.
    """

    transcoded_extension = "aac"
    output_extension = "mp3"
    content_type = "audio/mpeg"

    def __init__(
        self,
        binary: str = "ffmpeg",
        *,
        bitrate: str = "128k",
        default_timeout: float = DEFAULT_PROCESS_TIMEOUT,
    ) -> None:
        self._binary = binary
        self._bitrate = bitrate
        self._default_timeout = default_timeout

    @property
    def bitrate(self) -> str:
        return self._bitrate

    def _resolve_binary(self) -> Optional[str]:
        return shutil.which(self._binary)

    def _run(self, command: Sequence[str], *, timeout: Optional[float]) -> subprocess.CompletedProcess:
        bound = self._default_timeout if timeout is None else timeout
        LOGGER.debug("Executing FFmpeg command (timeout=%ss): %s", bound, " ".join(command))
        return subprocess.run(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            timeout=bound,
        )

    def _head(self, binary: str) -> List[str]:
        return [binary, "-hide_banner", "-loglevel", "error", "-y"]

    def build_transcode_command(self, binary: str, source: Path, destination: Path) -> List[str]:
        return self._head(binary) + [
            "-i",
            str(source),
            "-vn",
            "-c:a",
            "aac",
            "-b:a",
            self._bitrate,
            str(destination),
        ]

    def build_decode_command(self, binary: str, source: Path, destination: Path) -> List[str]:
        return self._head(binary) + [
            "-i",
            str(source),
            "-vn",
            "-ac",
            "1",
            "-c:a",
            "pcm_s16le",
            str(destination),
        ]

    def build_mix_command(self, binary: str, first: Path, second: Path, destination: Path) -> List[str]:
        return self._head(binary) + [
            "-i",
            str(first),
            "-i",
            str(second),
            "-filter_complex",
            "[0:a][1:a]amix=inputs=2:normalize=1",
            "-c:a",
            "libmp3lame",
            "-b:a",
            self._bitrate,
            str(destination),
        ]

    def _convert(
        self,
        command_builder,
        source: Path,
        destination: Path,
        *,
        timeout: Optional[float],
        action: str,
    ) -> Path:
        binary = self._resolve_binary()
        if binary is None:
            raise TranscodeFailed(f"FFmpeg binary '{self._binary}' not found")

        destination.parent.mkdir(parents=True, exist_ok=True)
        command = command_builder(binary, source, destination)
        try:
            completed = self._run(command, timeout=timeout)
        except subprocess.TimeoutExpired as error:
            destination.unlink(missing_ok=True)
            raise TranscodeFailed(
                f"FFmpeg {action} of {source.name} exceeded the {error.timeout:.0f}s timeout"
            ) from error
        except OSError as error:
            raise TranscodeFailed(f"Could not start FFmpeg: {error}") from error

        if completed.returncode != 0:
            destination.unlink(missing_ok=True)
            detail = _summarize_failure(completed)
            LOGGER.debug("FFmpeg %s failed (code=%s): %s", action, completed.returncode, detail)
            raise TranscodeFailed(f"Unable to {action} {source.name}: {detail}")

        LOGGER.debug("FFmpeg %s succeeded; output stored at %s", action, destination)
        return destination

    def transcode(self, source: Path, destination: Path, *, timeout: Optional[float] = None) -> Path:
        """Convert *source* to AAC at *destination*; raise :class:`TranscodeFailed`."""

        return self._convert(
            self.build_transcode_command, source, destination, timeout=timeout, action="transcode"
        )

    def decode_to_wav(self, source: Path, destination: Path, *, timeout: Optional[float] = None) -> Path:
        """Decode *source* to mono 16-bit PCM WAV; raise :class:`TranscodeFailed`."""

        return self._convert(
            self.build_decode_command, source, destination, timeout=timeout, action="decode"
        )

    def mix(self, first: Path, second: Path, destination: Path, *, timeout: Optional[float]) -> Path:
        """Mix *first* and *second* into *destination*; raise :class:`MixFailed`."""

        binary = self._resolve_binary()
        if binary is None:
            raise MixFailed(f"FFmpeg binary '{self._binary}' not found")

        destination.parent.mkdir(parents=True, exist_ok=True)
        command = self.build_mix_command(binary, first, second, destination)
        try:
            completed = self._run(command, timeout=timeout)
        except subprocess.TimeoutExpired as error:
            destination.unlink(missing_ok=True)
            raise MixFailed(f"FFmpeg mix exceeded the {error.timeout:.0f}s timeout") from error
        except OSError as error:
            raise MixFailed(f"Could not start FFmpeg: {error}") from error

        if completed.returncode != 0:
            destination.unlink(missing_ok=True)
            detail = _summarize_failure(completed)
            LOGGER.debug("FFmpeg mix failed (code=%s): %s", completed.returncode, detail)
            raise MixFailed(f"Unable to mix session audio: {detail}")

        LOGGER.debug("FFmpeg mix succeeded; output stored at %s", destination)
        return destination


def ensure_wav(
    source: Path,
    *,
    decoder: Optional[FFmpegAudioEngine],
    output_dir: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> Tuple[Path, bool]:
    """Return a PCM WAV version of *source* and whether a new file was written.

    WAV payloads are returned unchanged. Anything else is decoded with
    *decoder* into ``{stem}.decoded.wav``; without a decoder
    :class:`TranscodeFailed` is raised.
    """

    if is_wav_file(source):
        return source, False
    if decoder is None:
        raise TranscodeFailed(f"{source.name} is not WAV audio and no FFmpeg decoder is configured")

    destination = (output_dir or source.parent) / f"{source.stem}.decoded.wav"
    LOGGER.debug("Decoding %s to %s", source, destination)
    return decoder.decode_to_wav(source, destination, timeout=timeout), True


__all__ = [
    "AudioMixerEngine",
    "AudioTranscoder",
    "DEFAULT_PROCESS_TIMEOUT",
    "FFmpegAudioEngine",
    "ensure_wav",
    "ffmpeg_available",
    "is_wav_file",
]
