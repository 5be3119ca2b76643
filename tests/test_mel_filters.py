"""Tests for the triangular mel filter bank."""

import numpy as np
import pytest

from whisper_onnx.errors import ConfigurationError
from whisper_onnx.mel_filters import (
    build_mel_filter_bank,
    fft_bin_points,
    hz_to_mel,
    mel_to_hz,
)


@pytest.fixture(scope="module")
def bank():
    return build_mel_filter_bank(80, 201, 16000, 0.0, 8000.0)


def test_shape_and_dtype(bank):
    assert bank.weights.shape == (80, 201)
    assert bank.weights.dtype == np.float32
    assert bank.n_mels == 80
    assert bank.n_freqs == 201
    assert len(bank.bin_points) == 82


def test_mel_scale_round_trip():
    hz = np.array([0.0, 440.0, 1000.0, 8000.0])
    np.testing.assert_allclose(mel_to_hz(hz_to_mel(hz)), hz, atol=1e-6)
    assert float(hz_to_mel(700.0)) == pytest.approx(2595.0 * np.log10(2.0))


def test_bin_points_are_truncated_not_rounded():
    points = fft_bin_points(80, 201, 16000, 0.0, 8000.0)
    mel_max = float(hz_to_mel(8000.0))
    mels = mel_max * np.arange(82) / 81
    exact = 200 * 2 * mel_to_hz(mels) / 16000
    np.testing.assert_array_equal(points, np.floor(exact).astype(np.int64))
    # second point is 22 Hz -> 0.55 bins; rounding would give 1
    assert points[1] == 0


def test_bin_points_non_decreasing(bank):
    assert np.all(np.diff(bank.bin_points) >= 0)
    assert bank.bin_points[0] == 0


def test_weights_are_triangles(bank):
    f = np.arange(bank.n_freqs)
    for m in range(bank.n_mels):
        left, center, right = bank.boundaries(m)
        row = bank.weights[m]
        outside = (f < left) | (f > right)
        assert np.all(row[outside] == 0.0)
        assert row[center] == pytest.approx(1.0)
        rising = row[left : center + 1]
        falling = row[center : right + 1]
        assert np.all(np.diff(rising) >= 0)
        assert np.all(np.diff(falling) <= 0)
        if center > left:
            assert row[left] == 0.0
        if right > center:
            assert row[right] == 0.0


def test_degenerate_bins_do_not_divide_by_zero(bank):
    assert np.all(np.isfinite(bank.weights))
    degenerate = [m for m in range(bank.n_mels) if bank.boundaries(m)[0] == bank.boundaries(m)[1]]
    # low filters collapse at 201 bins: 0 Hz and 22 Hz both land on bin 0
    assert degenerate
    for m in degenerate:
        _, center, _ = bank.boundaries(m)
        assert bank.weights[m, center] == 1.0


def test_cached_and_read_only():
    a = build_mel_filter_bank(80, 201, 16000, 0.0, 8000.0)
    b = build_mel_filter_bank(80, 201, 16000, 0.0, 8000.0)
    assert a is b
    with pytest.raises(ValueError):
        a.weights[0, 0] = 5.0


def test_apply_dot_product(bank):
    power = np.ones((3, 201))
    energies = bank.apply(power)
    assert energies.shape == (3, 80)
    np.testing.assert_allclose(energies[0], bank.weights.sum(axis=1), rtol=1e-6)


@pytest.mark.parametrize(
    "n_mels, fmin, fmax",
    [(0, 0.0, 8000.0), (-3, 0.0, 8000.0), (80, 8000.0, 8000.0), (80, 4000.0, 1000.0)],
)
def test_invalid_parameters_rejected(n_mels, fmin, fmax):
    with pytest.raises(ConfigurationError):
        build_mel_filter_bank(n_mels, 201, 16000, fmin, fmax)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        fft_bin_points(0, 201, 16000, 0.0, 8000.0)
