import numpy as np
import pytest
import soundfile as sf

from whisper_onnx.audio import load_wav, pad_or_trim, squeeze_to_mono, to_float32, used_frame_count


def test_pad_or_trim():
    a = np.arange(5, dtype=np.float32)
    np.testing.assert_array_equal(pad_or_trim(a, 8), [0, 1, 2, 3, 4, 0, 0, 0])
    np.testing.assert_array_equal(pad_or_trim(a, 3), [0, 1, 2])
    assert pad_or_trim(a, 5) is a
    assert pad_or_trim(np.zeros(0, dtype=np.float32), 4).shape == (4,)


def test_to_float32_scales_integer_pcm():
    pcm = np.array([-32768, 0, 16384, 32767], dtype=np.int16)
    out = to_float32(pcm)
    assert out.dtype == np.float32
    np.testing.assert_allclose(out, [-1.0, 0.0, 0.5, 32767 / 32768])
    assert to_float32(np.array([2**31 - 1], dtype=np.int32))[0] == pytest.approx(1.0)


def test_to_float32_passes_floats_through():
    x = np.array([0.25, -2.0], dtype=np.float64)
    out = to_float32(x)
    assert out.dtype == np.float32
    np.testing.assert_array_equal(out, [0.25, -2.0])


@pytest.mark.parametrize("shape", [(1, 100), (100, 1)])
def test_squeeze_singleton_channel(shape):
    assert squeeze_to_mono(np.ones(shape)).shape == (100,)


def test_squeeze_averages_channels():
    stereo = np.stack([np.ones(10), -np.ones(10) * 0.5], axis=1)
    np.testing.assert_allclose(squeeze_to_mono(stereo), 0.25)


@pytest.mark.parametrize("n, expected", [(0, 0), (159, 1), (160, 1), (161, 2), (480000, 3000), (10**7, 3000)])
def test_used_frame_count(n, expected):
    assert used_frame_count(n, 160, 3000) == expected


def test_load_wav_native_rate(tmp_path):
    audio = 0.5 * np.sin(2 * np.pi * 200 * np.arange(16000) / 16000)
    path = tmp_path / "tone.wav"
    sf.write(path, audio, 16000, subtype="FLOAT")
    loaded = load_wav(path)
    assert loaded.dtype == np.float32
    np.testing.assert_allclose(loaded, audio, atol=1e-6)


def test_load_wav_resamples_and_downmixes(tmp_path):
    t = np.arange(8000) / 8000
    tone = 0.3 * np.sin(2 * np.pi * 300 * t)
    path = tmp_path / "stereo_8k.wav"
    sf.write(path, np.stack([tone, tone], axis=1), 8000, subtype="FLOAT")
    loaded = load_wav(path, sr=16000)
    assert loaded.ndim == 1
    assert abs(len(loaded) - 16000) <= 1
    # no peak normalization
    assert np.abs(loaded).max() == pytest.approx(0.3, abs=0.02)


def test_load_wav_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_wav(tmp_path / "nope.wav")
