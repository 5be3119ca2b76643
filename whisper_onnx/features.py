"""
Log-mel feature extraction: audio -> [n_mels, audio_ctx] tensor for the encoder.

Pipeline: pad/trim to 30 s -> Hann-windowed frames (hop 160, n_fft 400) ->
power spectrum (direct DFT) -> mel filter bank -> log -> normalization.
Non-finite input samples are not filtered; they propagate as NaN.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np

from .audio import pad_or_trim, squeeze_to_mono, to_float32, used_frame_count
from .config import DEFAULT_MODEL_CONFIG, ModelConfig, Normalization
from .mel_filters import MelFilterBank, build_mel_filter_bank

logger = logging.getLogger(__name__)

LOG_FLOOR = 1e-10
PER_BIN_EPS = 1e-8
# Dataset statistics of log10 mel energies used by the exported encoder
GLOBAL_LOG_MEAN = -4.2677393
GLOBAL_LOG_STD = 4.5689974


@dataclass(frozen=True)
class FeatureTensor:
    """Flat mel-major features (index = mel * n_frames + t) plus how many frames are real audio."""

    data: np.ndarray
    used_frames: int
    n_mels: int
    n_frames: int

    def __post_init__(self):
        if self.data.size != self.n_mels * self.n_frames:
            raise ValueError(
                f"Feature data has {self.data.size} values, expected {self.n_mels} x {self.n_frames}."
            )

    def as_matrix(self) -> np.ndarray:
        return self.data.reshape(self.n_mels, self.n_frames)

    def batched(self) -> np.ndarray:
        """[1, n_mels, n_frames] float32, the encoder input layout."""
        return self.data.reshape(1, self.n_mels, self.n_frames).astype(np.float32, copy=False)

    def attention_mask(self) -> np.ndarray:
        """[1, n_frames] float32: 1 for real frames, 0 for padding."""
        mask = np.zeros((1, self.n_frames), dtype=np.float32)
        mask[0, : self.used_frames] = 1.0
        return mask


def hann_window(n_fft: int) -> np.ndarray:
    """Symmetric Hann window w[n] = 0.5 * (1 - cos(2*pi*n / (N - 1)))."""
    n = np.arange(n_fft, dtype=np.float64)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * n / (n_fft - 1)))


@lru_cache(maxsize=4)
def _dft_basis(n_fft: int, n_freqs: int) -> tuple[np.ndarray, np.ndarray]:
    k = np.arange(n_freqs, dtype=np.float64)[:, None]
    n = np.arange(n_fft, dtype=np.float64)[None, :]
    angle = 2.0 * np.pi * k * n / n_fft
    cos, sin = np.cos(angle), np.sin(angle)
    cos.flags.writeable = False
    sin.flags.writeable = False
    return cos, sin


def frame_signal(audio: np.ndarray, n_frames: int, n_fft: int, hop_length: int) -> np.ndarray:
    """[n_frames, n_fft] frames; frame i starts at i * hop_length, zero past the end of audio."""
    needed = (n_frames - 1) * hop_length + n_fft
    padded = np.zeros(max(needed, len(audio)), dtype=np.float64)
    padded[: len(audio)] = audio
    windows = np.lib.stride_tricks.sliding_window_view(padded, n_fft)
    return windows[::hop_length][:n_frames]


def power_spectrum(frames: np.ndarray, n_fft: int) -> np.ndarray:
    """
    Direct DFT power for the first n_fft // 2 + 1 bins:
    (sum x[n] cos(2 pi k n / N))^2 + (sum x[n] sin(2 pi k n / N))^2.
    """
    cos, sin = _dft_basis(n_fft, n_fft // 2 + 1)
    real = frames @ cos.T
    imag = frames @ sin.T
    return real * real + imag * imag


def power_spectrum_fft(frames: np.ndarray, n_fft: int) -> np.ndarray:
    """Same power definition as power_spectrum, via a real FFT."""
    spectrum = np.fft.rfft(frames, n=n_fft, axis=-1)
    return spectrum.real ** 2 + spectrum.imag ** 2


def log_mel(energies: np.ndarray) -> np.ndarray:
    """Natural log with a 1e-10 floor."""
    return np.log(np.maximum(energies, LOG_FLOOR))


def normalize_per_bin(log_energies: np.ndarray) -> np.ndarray:
    """Zero mean, unit std per mel row across frames (std = sqrt(var + 1e-8))."""
    mean = log_energies.mean(axis=-1, keepdims=True)
    variance = ((log_energies - mean) ** 2).mean(axis=-1, keepdims=True)
    return (log_energies - mean) / np.sqrt(variance + PER_BIN_EPS)


def normalize_global(energies: np.ndarray) -> np.ndarray:
    """(log10(max(e, 1e-10)) - MEAN) / STD with fixed dataset statistics."""
    return (np.log10(np.maximum(energies, LOG_FLOOR)) - GLOBAL_LOG_MEAN) / GLOBAL_LOG_STD


def fit_features(data: np.ndarray, n_mels: int, n_frames: int) -> np.ndarray:
    """Pad (zeros) or trim a flat external feature array to n_mels * n_frames values."""
    flat = np.asarray(data, dtype=np.float32).reshape(-1)
    expected = n_mels * n_frames
    if flat.size != expected:
        logger.warning("Feature size %d doesn't match expected %d, adjusting", flat.size, expected)
        flat = pad_or_trim(flat, expected)
    return flat


class FeatureExtractor:
    """
    Audio -> FeatureTensor. Stateless after construction; one instance can be
    shared by concurrent requests.
    """

    def __init__(
        self,
        config: ModelConfig = DEFAULT_MODEL_CONFIG,
        normalization: Optional[Normalization] = None,
        use_fft: bool = False,
    ):
        self.config = config
        self.normalization = Normalization(normalization or config.normalization)
        self.use_fft = use_fft
        self.window = hann_window(config.n_fft)
        self.window.flags.writeable = False
        self.filters: MelFilterBank = build_mel_filter_bank(
            config.n_mels, config.n_freqs, config.sample_rate, config.fmin, config.fmax
        )

    def mel_energies(self, audio: np.ndarray) -> np.ndarray:
        """[n_mels, audio_ctx] mel energies of the 30 s window (before log)."""
        cfg = self.config
        audio = pad_or_trim(audio, cfg.n_samples)
        frames = frame_signal(audio, cfg.audio_ctx, cfg.n_fft, cfg.hop_length) * self.window
        if self.use_fft:
            power = power_spectrum_fft(frames, cfg.n_fft)
        else:
            power = power_spectrum(frames, cfg.n_fft)
        return self.filters.apply(power).T

    def log_mel_spectrogram(self, audio: np.ndarray) -> np.ndarray:
        """[n_mels, audio_ctx] natural-log energies, not normalized."""
        return log_mel(self.mel_energies(self._prepare(audio)))

    def extract(self, audio: np.ndarray, normalization: Optional[Normalization] = None) -> FeatureTensor:
        cfg = self.config
        audio = self._prepare(audio)
        used = used_frame_count(len(audio), cfg.hop_length, cfg.audio_ctx)
        energies = self.mel_energies(audio)

        policy = Normalization(normalization or self.normalization)
        if policy is Normalization.PER_BIN:
            features = normalize_per_bin(log_mel(energies))
        else:
            features = normalize_global(energies)

        logger.debug("Extracted %s features: %d samples, %d/%d frames used", policy.value, len(audio), used, cfg.audio_ctx)
        return FeatureTensor(
            data=features.astype(np.float32).reshape(-1),
            used_frames=used,
            n_mels=cfg.n_mels,
            n_frames=cfg.audio_ctx,
        )

    @staticmethod
    def _prepare(audio: np.ndarray) -> np.ndarray:
        return squeeze_to_mono(to_float32(np.asarray(audio))).astype(np.float64)
