"""TorchScriptEngine over tiny scripted encoder/decoder modules saved to disk."""

from typing import Dict, Optional, Tuple

import numpy as np
import pytest

from whisper_onnx.engine import TorchScriptEngine, last_token_logits
from whisper_onnx.errors import InferenceError

torch = pytest.importorskip("torch")


class _MaskedEncoder(torch.nn.Module):
    """Sums over mel bins; zeroes padding frames when a mask is given. Returns a 1-tuple."""

    def forward(self, features: torch.Tensor, mask: Optional[torch.Tensor] = None) -> Tuple[torch.Tensor]:
        summed = features.sum(dim=1, keepdim=True)
        if mask is not None:
            summed = summed * mask.unsqueeze(1)
        return (summed,)


class _DictEncoder(torch.nn.Module):
    def forward(self, features: torch.Tensor) -> Dict[str, torch.Tensor]:
        return {"last_hidden_state": features.mean(dim=1)}


class _EchoDecoder(torch.nn.Module):
    """Logits [batch, seq, 10]: every entry is the input id plus the hidden-state sum."""

    def forward(self, input_ids: torch.Tensor, hidden: torch.Tensor) -> torch.Tensor:
        ids = input_ids.unsqueeze(-1).to(torch.float32)
        return ids.repeat(1, 1, 10) + hidden.sum()


def _save(model_dir, encoder):
    model_dir.mkdir(exist_ok=True)
    torch.jit.script(encoder).save(str(model_dir / TorchScriptEngine.ENCODER_FILE))
    torch.jit.script(_EchoDecoder()).save(str(model_dir / TorchScriptEngine.DECODER_FILE))
    return model_dir


@pytest.fixture
def masked_dir(tmp_path):
    return _save(tmp_path / "masked", _MaskedEncoder())


@pytest.fixture
def dict_dir(tmp_path):
    return _save(tmp_path / "dict", _DictEncoder())


FEATURES = np.ones((1, 80, 3000), dtype=np.float32)
MASK = np.zeros((1, 3000), dtype=np.float32)
MASK[0, :100] = 1.0


def test_mask_forwarded_when_accepted(masked_dir):
    engine = TorchScriptEngine(masked_dir, accepts_mask=True)
    engine.load()
    hidden = engine.run_encoder(FEATURES, MASK)
    assert isinstance(hidden, np.ndarray)
    assert hidden.shape == (1, 1, 3000)
    np.testing.assert_allclose(hidden[0, 0, :100], 80.0)
    np.testing.assert_allclose(hidden[0, 0, 100:], 0.0)


def test_mask_withheld_by_default(masked_dir):
    engine = TorchScriptEngine(masked_dir)
    engine.load()
    hidden = engine.run_encoder(FEATURES, MASK)
    np.testing.assert_allclose(hidden, 80.0)


def test_dict_output_is_unwrapped(dict_dir):
    engine = TorchScriptEngine(dict_dir)
    engine.load()
    hidden = engine.run_encoder(FEATURES)
    assert hidden.shape == (1, 3000)
    np.testing.assert_allclose(hidden, 1.0)


def test_encoder_call_mismatch_is_wrapped(dict_dir):
    engine = TorchScriptEngine(dict_dir, accepts_mask=True)
    engine.load()
    with pytest.raises(InferenceError, match="Encoder failed"):
        engine.run_encoder(FEATURES, MASK)


def test_decoder_logits(masked_dir):
    engine = TorchScriptEngine(masked_dir)
    engine.load()
    ids = np.array([[50258, 50272, 50359, 50363, 7]], dtype=np.int64)
    logits = engine.run_decoder(ids, np.ones((1, 2, 3), dtype=np.float32))
    assert logits.shape == (1, 5, 10)
    np.testing.assert_allclose(last_token_logits(logits), 13.0)


def test_decoder_failure_is_wrapped(masked_dir):
    engine = TorchScriptEngine(masked_dir)
    engine.load()
    with pytest.raises(InferenceError, match="Decoder failed"):
        engine.run_decoder(np.zeros((1, 1, 4), dtype=np.int64), np.ones((1, 2), dtype=np.float32))


def test_close_releases_modules(masked_dir):
    engine = TorchScriptEngine(masked_dir)
    engine.load()
    engine.close()
    with pytest.raises(InferenceError):
        engine.run_decoder(np.zeros((1, 4), dtype=np.int64), np.ones((1, 2), dtype=np.float32))
