"""Model configuration: the constants that form the protocol with the exported model."""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Normalization(str, Enum):
    """How log-mel features are normalized before they reach a consumer."""

    # ln energies, zero mean / unit std per mel bin across all frames
    PER_BIN = "per_bin"
    # log10 energies with fixed dataset mean/std (encoder input)
    GLOBAL = "global"


# Whisper special tokens (multilingual vocabulary)
START_OF_TRANSCRIPT = 50258
ARABIC_TOKEN = 50272
TRANSCRIBE_TOKEN = 50359
NO_TIMESTAMPS = 50363
END_OF_TEXT = 50257


@dataclass
class ModelConfig:
    """Feature, decoding and runtime parameters. Defaults match whisper-tiny (Arabic, transcribe)."""

    sample_rate: int = 16000
    n_fft: int = 400
    hop_length: int = 160
    n_mels: int = 80
    fmin: float = 0.0
    fmax: float = 8000.0
    chunk_length: int = 30  # seconds
    audio_ctx: int = 3000  # frames fed to the encoder
    text_ctx: int = 448
    max_new_tokens: int = 128
    prompt_token_ids: tuple[int, ...] = (START_OF_TRANSCRIPT, ARABIC_TOKEN, TRANSCRIBE_TOKEN, NO_TIMESTAMPS)
    end_of_text_token_id: int = END_OF_TEXT
    temperature: float = 0.0  # 0 = greedy
    seed: Optional[int] = None
    normalization: Normalization = Normalization.GLOBAL
    model_id: str = "whisper-tiny-ar-quran"
    language: str = "ar"
    # onnxruntime session threads
    intra_op_threads: int = 4
    inter_op_threads: int = 2

    @property
    def n_samples(self) -> int:
        return self.sample_rate * self.chunk_length

    @property
    def n_freqs(self) -> int:
        return self.n_fft // 2 + 1

    def validate(self) -> None:
        if self.n_mels <= 0:
            raise ConfigurationError(f"n_mels must be positive, got {self.n_mels}")
        if self.fmax <= self.fmin:
            raise ConfigurationError(f"Require fmin < fmax, got fmin={self.fmin} fmax={self.fmax}")
        if self.sample_rate <= 0 or self.n_fft <= 0 or self.hop_length <= 0:
            raise ConfigurationError("sample_rate, n_fft and hop_length must be positive.")
        if self.audio_ctx <= 0 or self.chunk_length <= 0:
            raise ConfigurationError("audio_ctx and chunk_length must be positive.")
        if self.max_new_tokens < 0:
            raise ConfigurationError(f"max_new_tokens must be >= 0, got {self.max_new_tokens}")
        if self.temperature < 0:
            raise ConfigurationError(f"temperature must be >= 0, got {self.temperature}")
        if not self.prompt_token_ids:
            raise ConfigurationError("prompt_token_ids must contain at least the start-of-transcript token.")
        if len(self.prompt_token_ids) + self.max_new_tokens > self.text_ctx:
            raise ConfigurationError(
                f"Prompt ({len(self.prompt_token_ids)}) + max_new_tokens ({self.max_new_tokens}) "
                f"exceeds text context {self.text_ctx}."
            )

    @classmethod
    def from_json(cls, model_dir: str | Path, base: Optional["ModelConfig"] = None) -> "ModelConfig":
        """
        Overlay values from a model directory's config.json / generation_config.json.
        Missing files or keys keep the base value; unreadable JSON is logged and ignored.
        """
        model_dir = Path(model_dir)
        base = base or cls()
        overrides: dict = {}

        model_cfg = _read_json(model_dir / "config.json")
        n_mels = _int_value(model_cfg, "num_mel_bins", "config.json")
        if n_mels is not None:
            overrides["n_mels"] = n_mels
        source_positions = _int_value(model_cfg, "max_source_positions", "config.json")
        if source_positions is not None:
            # encoder conv stride 2: frames = 2 * positions
            overrides["audio_ctx"] = 2 * source_positions
        target_positions = _int_value(model_cfg, "max_target_positions", "config.json")
        if target_positions is not None:
            overrides["text_ctx"] = target_positions

        gen_cfg = _read_json(model_dir / "generation_config.json")
        eos = _int_value(gen_cfg, "eos_token_id", "generation_config.json")
        if eos is not None:
            overrides["end_of_text_token_id"] = eos
        start = gen_cfg.get("decoder_start_token_id")
        forced = gen_cfg.get("forced_decoder_ids")
        if isinstance(start, int) and isinstance(forced, list) and forced:
            prompt = _prompt_from_forced_ids(start, forced)
            if prompt is not None:
                overrides["prompt_token_ids"] = prompt
        max_length = _int_value(gen_cfg, "max_length", "generation_config.json")
        if max_length is not None:
            # total sequence cap, never above the decoder's positions
            overrides["text_ctx"] = min(overrides.get("text_ctx", base.text_ctx), max_length)

        if overrides:
            logger.debug("Config overrides from %s: %s", model_dir, overrides)
        return dataclasses.replace(base, **overrides)


def _read_json(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable %s: %s", path.name, e)
        return {}
    return data if isinstance(data, dict) else {}


def _int_value(data: dict, key: str, source: str) -> Optional[int]:
    """Non-negative int at `key`, or None. Present but malformed values are logged and ignored."""
    if key not in data:
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        logger.warning("Ignoring %s in %s: expected a non-negative integer, got %r", key, source, value)
        return None
    return value


def _prompt_from_forced_ids(start: int, forced: list) -> Optional[tuple[int, ...]]:
    """[[1, lang], [2, task], [3, notimestamps]] -> (start, lang, task, notimestamps); None if any slot is open."""
    slots = {}
    for entry in forced:
        if not isinstance(entry, (list, tuple)) or len(entry) != 2:
            return None
        position, token = entry
        if not isinstance(position, int) or not isinstance(token, int):
            return None
        slots[position] = token
    if sorted(slots) != list(range(1, len(slots) + 1)):
        return None
    return (start,) + tuple(slots[p] for p in sorted(slots))


DEFAULT_MODEL_CONFIG = ModelConfig()
