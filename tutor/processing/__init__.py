"""Audio processing backends for finished sessions."""

from .audio import NumpyAudioEngine, load_wav_file, mix_signals, save_wav_file
from .mixing import AudioMixer, MixResult, MixerSettings

__all__ = [
    "AudioMixer",
    "MixResult",
    "MixerSettings",
    "NumpyAudioEngine",
    "load_wav_file",
    "mix_signals",
    "save_wav_file",
]
