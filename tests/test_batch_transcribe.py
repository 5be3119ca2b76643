import json

import numpy as np
import pytest
import soundfile as sf

from batch_transcribe import run_batch
from conftest import ScriptedEngine
from whisper_onnx.transcriber import Transcriber


class _LengthKeyedEngine(ScriptedEngine):
    """Picks the token from the sequence length, so concurrent requests don't share a script cursor."""

    def run_decoder(self, input_ids, hidden_states):
        seq_len = input_ids.shape[1]
        token = self.script[min(seq_len - 4, len(self.script) - 1)]
        logits = np.zeros((1, seq_len, self.vocab_size), dtype=np.float32)
        logits[0, -1, token] = 10.0
        return logits


@pytest.fixture
def transcriber(model_dir):
    t = Transcriber(model_dir, engine=_LengthKeyedEngine([7, 8, 9, 50257]))
    t.initialize()
    yield t
    t.close()


@pytest.fixture
def clips(tmp_path):
    clip_dir = tmp_path / "clips"
    (clip_dir / "nested").mkdir(parents=True)
    for i, path in enumerate([clip_dir / "b.wav", clip_dir / "a.wav", clip_dir / "nested" / "c.wav"]):
        sf.write(path, np.zeros(8000 * (i + 1), dtype=np.float32), 16000)
    return clip_dir


@pytest.mark.parametrize("workers", [1, 3])
def test_run_batch(transcriber, clips, tmp_path, workers):
    summary_path = tmp_path / "out" / "summary.json"
    summary = run_batch(transcriber, clips, workers=workers, summary_path=summary_path, progress=False)

    assert summary["total_files"] == 3
    assert summary["ok"] == 3
    assert summary["errors"] == 0
    assert summary["total_audio_s"] == pytest.approx(3.0)
    inputs = [r["input"] for r in summary["results"]]
    assert inputs == sorted(inputs)
    assert all(r["text"] == "Hello world" for r in summary["results"])

    written = json.loads(summary_path.read_text(encoding="utf-8"))
    assert written["ok"] == 3


def test_unreadable_file_is_reported(transcriber, clips):
    (clips / "broken.wav").write_bytes(b"not a wav file")
    summary = run_batch(transcriber, clips, progress=False)
    assert summary["total_files"] == 4
    assert summary["errors"] == 1
    broken = next(r for r in summary["results"] if r["input"].endswith("broken.wav"))
    assert broken["status"] == "error"
    assert broken["text"] is None


def test_empty_directory(transcriber, tmp_path):
    summary = run_batch(transcriber, tmp_path, pattern="*.flac", progress=False)
    assert summary == {"total_files": 0, "ok": 0, "errors": 0, "results": []}


def test_unexpected_error_does_not_stop_batch(transcriber, clips, monkeypatch):
    transcribe_file = transcriber.transcribe_file

    def flaky(path, cancel_event=None):
        if path.name == "a.wav":
            raise KeyError("missing piece")
        return transcribe_file(path, cancel_event)

    monkeypatch.setattr(transcriber, "transcribe_file", flaky)
    summary = run_batch(transcriber, clips, workers=2, progress=False)
    assert summary["total_files"] == 3
    assert summary["ok"] == 2
    assert summary["errors"] == 1
    failed = next(r for r in summary["results"] if r["input"].endswith("a.wav"))
    assert failed["status"] == "error"
    assert "missing piece" in failed["error"]
