"""Shared fixtures: scripted inference engines and temporary model directories."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from whisper_onnx.engine import InferenceEngine
from whisper_onnx.errors import InferenceError
from whisper_onnx.vocab import bytes_to_unicode


class ScriptedEngine(InferenceEngine):
    """Decoder emits `script[step]` as the argmax token; repeats the last entry afterwards."""

    def __init__(self, script, vocab_size=51865, fail_at_step=None):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.fail_at_step = fail_at_step
        self.decoder_calls = []
        self.encoder_calls = []
        self.closed = False

    def run_encoder(self, features, mask=None):
        self.encoder_calls.append((features.shape, None if mask is None else mask.copy()))
        return np.zeros((1, 1500, 384), dtype=np.float32)

    def run_decoder(self, input_ids, hidden_states):
        step = len(self.decoder_calls)
        self.decoder_calls.append(input_ids.copy())
        if self.fail_at_step is not None and step == self.fail_at_step:
            raise InferenceError(f"scripted failure at step {step}")
        token = self.script[min(step, len(self.script) - 1)] if self.script else 0
        seq_len = input_ids.shape[1]
        logits = np.zeros((1, seq_len, self.vocab_size), dtype=np.float32)
        if 0 <= token < self.vocab_size:
            logits[0, -1, token] = 10.0
        return logits

    def close(self):
        self.closed = True


class UniformEngine(InferenceEngine):
    """Decoder returns identical logits for every id."""

    def __init__(self, vocab_size=51865):
        self.vocab_size = vocab_size
        self.steps = 0

    def run_encoder(self, features, mask=None):
        return np.zeros((1, 4, 8), dtype=np.float32)

    def run_decoder(self, input_ids, hidden_states):
        self.steps += 1
        return np.zeros((1, input_ids.shape[1], self.vocab_size), dtype=np.float32)


def encode_text(text: str) -> str:
    """Text -> piece string in the byte-remapped alphabet."""
    table = bytes_to_unicode()
    return "".join(table[b] for b in text.encode("utf-8"))


def write_tokenizer_json(path: Path, pieces: dict, added_tokens: list) -> Path:
    path.write_text(
        json.dumps({"model": {"type": "BPE", "vocab": pieces}, "added_tokens": added_tokens}),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def scripted_engine():
    return ScriptedEngine


@pytest.fixture
def whisper_like_pieces():
    """Ids 0..50256 with a few real pieces; the rest are placeholders."""
    pieces = {f"tok{i}": i for i in range(50257)}
    pieces.pop("tok7")
    pieces.pop("tok8")
    pieces.pop("tok9")
    pieces[encode_text("Hello")] = 7
    pieces[encode_text(" wor")] = 8
    pieces[encode_text("ld")] = 9
    return pieces


@pytest.fixture
def added_tokens():
    names = {
        50257: "<|endoftext|>",
        50258: "<|startoftranscript|>",
        50259: "<|en|>",
        50272: "<|ar|>",
        50359: "<|transcribe|>",
        50363: "<|notimestamps|>",
    }
    return [{"id": i, "content": c, "special": True} for i, c in names.items()]


@pytest.fixture
def model_dir(tmp_path, whisper_like_pieces, added_tokens):
    """Model directory with a tokenizer.json and placeholder ONNX files."""
    write_tokenizer_json(tmp_path / "tokenizer.json", whisper_like_pieces, added_tokens)
    (tmp_path / "encoder_model.onnx").write_bytes(b"")
    (tmp_path / "decoder_model.onnx").write_bytes(b"")
    return tmp_path
