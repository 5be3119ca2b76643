"""Audio I/O and length handling: load WAV, convert PCM, pad/trim to the model window."""

from __future__ import annotations

import math
from pathlib import Path

import numpy as np
import soundfile as sf
import librosa


def load_wav(path: str | Path, sr: int = 16000, mono: bool = True) -> np.ndarray:
    """
    Load audio as float32 at target sample rate.
    Resamples if needed. No peak normalization: the encoder expects raw amplitude.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Audio file not found: {path}")

    wav, file_sr = sf.read(path, dtype="float32")
    if wav.ndim > 1 and mono:
        wav = wav.mean(axis=1)
    if file_sr != sr:
        wav = resample(wav, file_sr, sr)
    return wav.astype(np.float32)


def resample(wav: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    """Resample to target_sr using librosa."""
    if orig_sr == target_sr:
        return wav
    return librosa.resample(
        wav.astype(np.float64),
        orig_sr=orig_sr,
        target_sr=target_sr,
        res_type="soxr_hq",
    ).astype(np.float32)


def to_float32(audio: np.ndarray) -> np.ndarray:
    """Integer PCM -> float32 in [-1, 1]. Float input is passed through as float32."""
    audio = np.asarray(audio)
    if np.issubdtype(audio.dtype, np.integer):
        scale = float(np.iinfo(audio.dtype).max) + 1.0
        return (audio.astype(np.float64) / scale).astype(np.float32)
    return audio.astype(np.float32, copy=False)


def squeeze_to_mono(audio: np.ndarray) -> np.ndarray:
    """Ensure audio is 1D: drop singleton channel axes, average real channels."""
    if audio.ndim > 1:
        audio = np.squeeze(audio)
    if audio.ndim > 1:
        # [samples, channels] as returned by soundfile
        audio = audio.mean(axis=1)
    return audio


def pad_or_trim(audio: np.ndarray, length: int) -> np.ndarray:
    """Zero-pad or truncate to exactly `length` samples."""
    n = len(audio)
    if n > length:
        return audio[:length]
    if n < length:
        out = np.zeros(length, dtype=audio.dtype)
        out[:n] = audio
        return out
    return audio


def used_frame_count(num_samples: int, hop_length: int, max_frames: int) -> int:
    """Frames covering genuine signal: ceil(num_samples / hop), capped at max_frames."""
    return min(math.ceil(num_samples / hop_length), max_frames)
