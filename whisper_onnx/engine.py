"""
Inference engines: the opaque encoder/decoder forward passes.

Encoder: input_features [1, n_mels, audio_ctx] (+ optional attention mask [1, audio_ctx])
         -> hidden states (engine-defined shape).
Decoder: input_ids [1, seq_len] + encoder_hidden_states -> logits [1, seq_len, vocab_size].
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import numpy as np

from .errors import InferenceError, ResourceMissingError

logger = logging.getLogger(__name__)

# Names under which exported encoders accept a frame mask
MASK_INPUT_NAMES = ("attention_mask", "encoder_attention_mask", "audio_attention_mask")


class InferenceEngine(ABC):
    """Encoder/decoder capability. Implementations raise InferenceError on failure."""

    def load(self) -> None:
        """Acquire sessions/modules. Called once before the first forward pass."""

    @abstractmethod
    def run_encoder(self, features: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Run the encoder. `mask` is only forwarded when the model declares a
        mask input; otherwise it is ignored.
        """

    @abstractmethod
    def run_decoder(self, input_ids: np.ndarray, hidden_states: np.ndarray) -> np.ndarray:
        """One decoder forward pass over the whole sequence (no KV cache)."""

    def close(self) -> None:
        """Release sessions/modules."""


def last_token_logits(logits: np.ndarray) -> np.ndarray:
    """Logits of the final sequence position from a [batch, seq_len, vocab] tensor."""
    logits = np.asarray(logits)
    if logits.ndim != 3 or logits.shape[0] < 1 or logits.shape[1] < 1 or logits.shape[2] < 1:
        raise InferenceError(f"Decoder returned logits of shape {logits.shape}, expected [1, seq_len, vocab_size]")
    return logits[0, -1, :]


def find_mask_input(input_names) -> Optional[str]:
    for name in MASK_INPUT_NAMES:
        if name in input_names:
            return name
    return None


class OnnxEngine(InferenceEngine):
    """
    onnxruntime sessions for encoder_model.onnx / decoder_model.onnx.

    Usage:
        engine = OnnxEngine("models/whisper_onnx")
        engine.load()
        hidden = engine.run_encoder(features, mask)
    """

    ENCODER_FILE = "encoder_model.onnx"
    DECODER_FILE = "decoder_model.onnx"

    def __init__(self, model_dir: str | Path, intra_op_threads: int = 4, inter_op_threads: int = 2):
        self.model_dir = Path(model_dir)
        self.intra_op_threads = intra_op_threads
        self.inter_op_threads = inter_op_threads
        self._encoder = None
        self._decoder = None
        self._mask_name: Optional[str] = None
        self._feature_name = "input_features"

    def load(self) -> None:
        if self._encoder is not None and self._decoder is not None:
            return
        encoder_path = self.model_dir / self.ENCODER_FILE
        decoder_path = self.model_dir / self.DECODER_FILE
        for path in (encoder_path, decoder_path):
            if not path.exists():
                raise ResourceMissingError(f"{path.name} not found in {self.model_dir}")
        try:
            import onnxruntime as ort
        except ImportError:
            raise ImportError("onnxruntime not installed. Run: pip install onnxruntime")

        opts = ort.SessionOptions()
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        opts.intra_op_num_threads = self.intra_op_threads
        opts.inter_op_num_threads = self.inter_op_threads
        try:
            encoder = ort.InferenceSession(str(encoder_path), opts, providers=["CPUExecutionProvider"])
            decoder = ort.InferenceSession(str(decoder_path), opts, providers=["CPUExecutionProvider"])
        except Exception as e:
            self.close()
            raise InferenceError(f"ONNX Runtime error during initialization: {e}") from e
        self.bind_sessions(encoder, decoder)

    def bind_sessions(self, encoder, decoder) -> None:
        """Adopt already-created sessions and discover the encoder's input names."""
        self._encoder = encoder
        self._decoder = decoder
        encoder_inputs = [i.name for i in encoder.get_inputs()]
        self._mask_name = find_mask_input(encoder_inputs)
        feature_inputs = [name for name in encoder_inputs if name != self._mask_name]
        if not feature_inputs:
            raise InferenceError(f"Encoder declares no feature input: {encoder_inputs}")
        self._feature_name = "input_features" if "input_features" in feature_inputs else feature_inputs[0]
        logger.debug("Encoder inputs: %s", encoder_inputs)
        logger.debug("Encoder outputs: %s", [o.name for o in encoder.get_outputs()])
        logger.debug("Decoder inputs: %s", [i.name for i in decoder.get_inputs()])
        logger.debug("Decoder outputs: %s", [o.name for o in decoder.get_outputs()])

    @property
    def mask_input_name(self) -> Optional[str]:
        return self._mask_name

    def run_encoder(self, features: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
        if self._encoder is None:
            raise InferenceError("Encoder session not available")
        inputs = {self._feature_name: np.ascontiguousarray(features, dtype=np.float32)}
        if mask is not None and self._mask_name is not None:
            inputs[self._mask_name] = np.ascontiguousarray(mask, dtype=np.float32)
        try:
            return self._encoder.run(None, inputs)[0]
        except Exception as e:
            raise InferenceError(f"Encoder failed: {e}") from e

    def run_decoder(self, input_ids: np.ndarray, hidden_states: np.ndarray) -> np.ndarray:
        if self._decoder is None:
            raise InferenceError("Decoder session not available")
        inputs = {
            "input_ids": np.ascontiguousarray(input_ids, dtype=np.int64),
            "encoder_hidden_states": hidden_states,
        }
        try:
            return self._decoder.run(None, inputs)[0]
        except Exception as e:
            raise InferenceError(f"Decoder failed: {e}") from e

    def close(self) -> None:
        self._encoder = None
        self._decoder = None


class TorchScriptEngine(InferenceEngine):
    """
    TorchScript encoder/decoder modules (encoder_model.pt / decoder_model.pt).
    Runs under torch.no_grad(); tensors are converted back to numpy per call.
    """

    ENCODER_FILE = "encoder_model.pt"
    DECODER_FILE = "decoder_model.pt"

    def __init__(self, model_dir: str | Path, device: str = "cpu", accepts_mask: bool = False):
        self.model_dir = Path(model_dir)
        self.device = device
        self.accepts_mask = accepts_mask
        self._encoder = None
        self._decoder = None

    def load(self) -> None:
        if self._encoder is not None and self._decoder is not None:
            return
        import torch

        modules = []
        for name in (self.ENCODER_FILE, self.DECODER_FILE):
            path = self.model_dir / name
            if not path.exists():
                raise ResourceMissingError(f"{name} not found in {self.model_dir}")
            try:
                module = torch.jit.load(str(path), map_location=self.device)
            except Exception as e:
                raise InferenceError(f"Failed to load {name}: {e}") from e
            module.eval()
            modules.append(module)
        self._encoder, self._decoder = modules

    def run_encoder(self, features: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
        import torch

        if self._encoder is None:
            raise InferenceError("Encoder module not available")
        try:
            with torch.no_grad():
                x = torch.from_numpy(np.ascontiguousarray(features, dtype=np.float32)).to(self.device)
                if mask is not None and self.accepts_mask:
                    m = torch.from_numpy(np.ascontiguousarray(mask, dtype=np.float32)).to(self.device)
                    out = self._encoder(x, m)
                else:
                    out = self._encoder(x)
                return _first_output(out).cpu().numpy()
        except Exception as e:
            raise InferenceError(f"Encoder failed: {e}") from e

    def run_decoder(self, input_ids: np.ndarray, hidden_states: np.ndarray) -> np.ndarray:
        import torch

        if self._decoder is None:
            raise InferenceError("Decoder module not available")
        try:
            with torch.no_grad():
                ids = torch.from_numpy(np.ascontiguousarray(input_ids, dtype=np.int64)).to(self.device)
                hs = torch.from_numpy(np.ascontiguousarray(hidden_states, dtype=np.float32)).to(self.device)
                return _first_output(self._decoder(ids, hs)).cpu().numpy()
        except Exception as e:
            raise InferenceError(f"Decoder failed: {e}") from e

    def close(self) -> None:
        self._encoder = None
        self._decoder = None


def _first_output(out):
    if isinstance(out, (list, tuple)):
        out = out[0]
    elif isinstance(out, dict):
        out = next(iter(out.values()))
    return out


def create_engine(
    model_dir: str | Path,
    backend: str = "onnx",
    intra_op_threads: int = 4,
    inter_op_threads: int = 2,
    device: str = "cpu",
) -> InferenceEngine:
    """Engine for `backend` ("onnx" or "torchscript"). Not loaded yet."""
    if backend == "onnx":
        return OnnxEngine(model_dir, intra_op_threads=intra_op_threads, inter_op_threads=inter_op_threads)
    if backend == "torchscript":
        return TorchScriptEngine(model_dir, device=device)
    raise ValueError(f"Unknown engine backend: {backend!r} (expected 'onnx' or 'torchscript')")
