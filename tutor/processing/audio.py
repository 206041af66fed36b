"""In-process WAV helpers and a NumPy implementation of the mixer engine."""

from __future__ import annotations

import logging
import wave
from pathlib import Path
from typing import Optional, Tuple

import numpy as np

from ..errors import MixFailed, TranscodeFailed
from ..services.audio_conversion import FFmpegAudioEngine, ensure_wav


LOGGER = logging.getLogger(__name__)


def load_wav_file(path: Path) -> Tuple[np.ndarray, int]:
    """Return the PCM samples and sample rate stored in *path*.

    Mono or multi-channel PCM WAV files with 8, 16, 24 or 32 bit samples are
    supported. Samples come back as ``float32`` in ``[-1, 1]`` with shape
    ``(frames,)`` for mono and ``(frames, channels)`` otherwise. Unsupported
    encodings raise :class:`ValueError`.
    """

    try:
        with wave.open(str(path), "rb") as handle:
            channels = handle.getnchannels()
            sample_rate = handle.getframerate()
            sample_width = handle.getsampwidth()
            frame_count = handle.getnframes()
            payload = handle.readframes(frame_count)
    except (wave.Error, EOFError) as error:
        raise ValueError(f"Unsupported WAV file: {error}") from error

    if channels <= 0:
        raise ValueError("WAV file reports zero channels")

    if sample_width == 1:
        data = np.frombuffer(payload, dtype=np.uint8).astype(np.float32)
        data = (data - 128.0) / 128.0
    elif sample_width == 2:
        data = np.frombuffer(payload, dtype=np.int16).astype(np.float32)
        data /= 32_768.0
    elif sample_width == 3:
        raw = np.frombuffer(payload, dtype=np.uint8)
        if raw.size % 3:
            raise ValueError("Corrupt 24-bit WAV payload")
        reshaped = raw.reshape(-1, 3)
        signed = (
            reshaped[:, 0].astype(np.int32)
            | (reshaped[:, 1].astype(np.int32) << 8)
            | (reshaped[:, 2].astype(np.int32) << 16)
        )
        mask = signed & 0x800000
        signed = signed - (mask << 1)
        data = signed.astype(np.float32) / float(1 << 23)
    elif sample_width == 4:
        data = np.frombuffer(payload, dtype=np.int32).astype(np.float32)
        data /= float(1 << 31)
    else:
        raise ValueError(f"Unsupported sample width: {sample_width * 8} bits")

    if channels > 1:
        usable = (data.size // channels) * channels
        data = data[:usable].reshape(-1, channels)
    return data, sample_rate


def save_wav_file(path: Path, audio: np.ndarray, sample_rate: int) -> None:
    """Persist ``audio`` to *path* as a mono 16-bit PCM WAV file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    mono = np.asarray(audio, dtype=np.float32).flatten()
    pcm = np.clip(mono, -1.0, 1.0)
    pcm = np.round(pcm * 32_767).astype(np.int16)

    with wave.open(str(path), "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(pcm.tobytes())


def to_mono(audio: np.ndarray) -> np.ndarray:
    samples = np.asarray(audio, dtype=np.float32)
    if samples.ndim > 1:
        samples = samples.mean(axis=1)
    return samples.astype(np.float32, copy=False)


def resample_linear(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Resample mono *audio* with linear interpolation."""

    if source_rate == target_rate or audio.size == 0:
        return audio.astype(np.float32, copy=False)
    duration = audio.size / float(source_rate)
    target_count = max(int(round(duration * target_rate)), 1)
    source_positions = np.arange(audio.size, dtype=np.float64) / float(source_rate)
    target_positions = np.arange(target_count, dtype=np.float64) / float(target_rate)
    return np.interp(target_positions, source_positions, audio).astype(np.float32)


def mix_signals(first: np.ndarray, second: np.ndarray) -> np.ndarray:
    """Average two mono signals, padding the shorter one with silence.

    Matches the ``amix`` filter with ``normalize=1``: each input is scaled
    by ``1 / inputs`` so the sum cannot clip.
    """

    length = max(first.size, second.size)
    mixed = np.zeros(length, dtype=np.float32)
    mixed[: first.size] += first * 0.5
    mixed[: second.size] += second * 0.5
    return mixed


class NumpyAudioEngine:
    """Mixer engine that does the signal work in-process with NumPy.

    WAV input is read directly. Browser recordings (``webm``/``mp4``) are
    first decoded to PCM WAV through *decoder*; without one such tracks fail
    with :class:`TranscodeFailed`.
    """

    transcoded_extension = "wav"
    output_extension = "wav"
    content_type = "audio/wav"

    def __init__(
        self,
        *,
        sample_rate: Optional[int] = None,
        decoder: Optional[FFmpegAudioEngine] = None,
    ) -> None:
        self._sample_rate = sample_rate
        self._decoder = decoder

    def _read(self, path: Path, *, timeout: Optional[float]) -> Tuple[np.ndarray, int]:
        wav_path, _ = ensure_wav(path, decoder=self._decoder, timeout=timeout)
        return load_wav_file(wav_path)

    def transcode(self, source: Path, destination: Path, *, timeout: Optional[float] = None) -> Path:
        try:
            samples, rate = self._read(source, timeout=timeout)
        except ValueError as error:
            raise TranscodeFailed(f"Unable to transcode {source.name}: {error}") from error
        save_wav_file(destination, to_mono(samples), rate)
        return destination

    def mix(self, first: Path, second: Path, destination: Path, *, timeout: Optional[float] = None) -> Path:
        try:
            first_samples, first_rate = self._read(first, timeout=timeout)
            second_samples, second_rate = self._read(second, timeout=timeout)
        except (ValueError, TranscodeFailed) as error:
            raise MixFailed(f"Unable to mix session audio: {error}") from error

        target_rate = self._sample_rate or max(first_rate, second_rate)
        first_mono = resample_linear(to_mono(first_samples), first_rate, target_rate)
        second_mono = resample_linear(to_mono(second_samples), second_rate, target_rate)
        mixed = mix_signals(first_mono, second_mono)
        LOGGER.debug(
            "Mixed %s frames at %s Hz (inputs: %s, %s)",
            mixed.size,
            target_rate,
            first_mono.size,
            second_mono.size,
        )
        try:
            save_wav_file(destination, mixed, target_rate)
        except OSError as error:
            raise MixFailed(f"Could not write mixed audio: {error}") from error
        return destination


__all__ = [
    "NumpyAudioEngine",
    "load_wav_file",
    "mix_signals",
    "resample_linear",
    "save_wav_file",
    "to_mono",
]
