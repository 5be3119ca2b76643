"""
Triangular mel filter bank (Whisper-compatible parameters).

Bin boundaries are truncated, not rounded, to the FFT grid. The encoder was
trained on features built this way, so the filter alignment must not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import numpy as np

from .errors import ConfigurationError


def hz_to_mel(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (10.0 ** (np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


def _check_params(n_mels: int, n_freqs: int, sample_rate: int, fmin: float, fmax: float) -> None:
    if n_mels <= 0:
        raise ConfigurationError(f"n_mels must be positive, got {n_mels}")
    if fmax <= fmin:
        raise ConfigurationError(f"Require fmin < fmax, got fmin={fmin} fmax={fmax}")
    if n_freqs <= 0 or sample_rate <= 0:
        raise ConfigurationError("n_freqs and sample_rate must be positive.")


def fft_bin_points(n_mels: int, n_freqs: int, sample_rate: int, fmin: float, fmax: float) -> np.ndarray:
    """n_mels + 2 FFT bin indices, equally spaced on the mel scale between fmin and fmax."""
    _check_params(n_mels, n_freqs, sample_rate, fmin, fmax)
    mel_min = float(hz_to_mel(fmin))
    mel_max = float(hz_to_mel(fmax))
    mel_points = mel_min + (mel_max - mel_min) * np.arange(n_mels + 2, dtype=np.float64) / (n_mels + 1)
    hz_points = mel_to_hz(mel_points)
    return ((n_freqs - 1) * 2 * hz_points / sample_rate).astype(np.int64)


@dataclass(frozen=True)
class MelFilterBank:
    """Dense [n_mels, n_freqs] weights plus the bin points they were built from. Read-only."""

    weights: np.ndarray
    bin_points: np.ndarray
    sample_rate: int
    fmin: float
    fmax: float

    @property
    def n_mels(self) -> int:
        return self.weights.shape[0]

    @property
    def n_freqs(self) -> int:
        return self.weights.shape[1]

    def boundaries(self, mel: int) -> tuple[int, int, int]:
        """(left, center, right) FFT bins of filter `mel`."""
        left, center, right = self.bin_points[mel : mel + 3]
        return int(left), int(center), int(right)

    def apply(self, power: np.ndarray) -> np.ndarray:
        """power: [..., n_freqs] -> mel energies [..., n_mels]."""
        return power @ self.weights.T


@lru_cache(maxsize=8)
def build_mel_filter_bank(
    n_mels: int = 80,
    n_freqs: int = 201,
    sample_rate: int = 16000,
    fmin: float = 0.0,
    fmax: float = 8000.0,
) -> MelFilterBank:
    """
    Build (or return the cached) filter bank for this parameter tuple.

    Weight at bin f rises linearly from 0 at `left` to 1 at `center` (center
    belongs to the rising edge), falls linearly to 0 at `right`, and is 0
    outside [left, right].
    """
    points = fft_bin_points(n_mels, n_freqs, sample_rate, fmin, fmax)
    weights = np.zeros((n_mels, n_freqs), dtype=np.float32)
    f = np.arange(n_freqs)

    for m in range(n_mels):
        left, center, right = (int(b) for b in points[m : m + 3])
        rising = (f >= left) & (f <= center)
        falling = (f > center) & (f <= right)
        if center > left:
            weights[m, rising] = (f[rising] - left) / (center - left)
        else:
            # degenerate rising edge: only f == center survives
            weights[m, rising] = 1.0
        if right > center:
            weights[m, falling] = (right - f[falling]) / (right - center)

    weights.flags.writeable = False
    points.flags.writeable = False
    return MelFilterBank(weights=weights, bin_points=points, sample_rate=sample_rate, fmin=fmin, fmax=fmax)
