"""
Transcription service: audio or features -> text.

Owns the engine, vocabulary, feature extractor and decoding loop for one model
directory. State is explicit (UNINITIALIZED -> READY | FAILED, then CLOSED) and
returned from initialize(); nothing is process-global.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np

from .audio import load_wav
from .config import ModelConfig
from .decoding import DecodingLoop, GenerationResult
from .engine import InferenceEngine, create_engine
from .errors import (
    ConfigurationError,
    InferenceError,
    ResourceMissingError,
    TranscriptionError,
)
from .features import FeatureExtractor, FeatureTensor, fit_features
from .vocab import Vocabulary, load_vocabulary

logger = logging.getLogger(__name__)

REQUIRED_MODEL_FILES = ("encoder_model.onnx", "decoder_model.onnx")
OPTIONAL_MODEL_FILES = (
    "tokenizer.json",
    "config.json",
    "generation_config.json",
    "vocab.json",
    "merges.txt",
    "normalizer.json",
    "preprocessor_config.json",
    "added_tokens.json",
    "special_tokens_map.json",
    "tokenizer_config.json",
)


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    FAILED = "failed"
    # terminal: the worker pool is shut down
    CLOSED = "closed"


def check_model_files(
    model_dir: str | Path,
    required: tuple[str, ...] = REQUIRED_MODEL_FILES,
    optional: tuple[str, ...] = OPTIONAL_MODEL_FILES,
) -> list[str]:
    """Raise ResourceMissingError if a required file is absent; return missing optional files."""
    model_dir = Path(model_dir)
    if not model_dir.is_dir():
        raise ResourceMissingError(f"Model directory not found: {model_dir}")
    missing_required = [name for name in required if not (model_dir / name).exists()]
    if missing_required:
        raise ResourceMissingError(
            f"Required model file(s) {', '.join(missing_required)} not found in {model_dir}"
        )
    missing_optional = [name for name in optional if not (model_dir / name).exists()]
    for name in missing_optional:
        logger.debug("Optional file %s not found", name)
    return missing_optional


class Transcriber:
    """
    Host-facing surface: initialize, transcribe, transcribe_from_features,
    is_initialized, get_info. Engine and vocabulary may be injected (tests,
    custom backends); otherwise they are built from `model_dir`.

    Usage:
        with Transcriber("models/whisper_onnx") as t:
            if t.initialize() is ModelState.READY:
                print(t.transcribe(samples))
    """

    def __init__(
        self,
        model_dir: Optional[str | Path] = None,
        config: Optional[ModelConfig] = None,
        engine: Optional[InferenceEngine] = None,
        vocabulary: Optional[Vocabulary] = None,
        backend: str = "onnx",
        allow_degraded_vocabulary: bool = False,
        max_workers: int = 1,
    ):
        self.model_dir = Path(model_dir) if model_dir is not None else None
        if config is None:
            config = ModelConfig.from_json(self.model_dir) if self.model_dir is not None else ModelConfig()
        self.config = config
        self.backend = backend
        self.allow_degraded_vocabulary = allow_degraded_vocabulary
        self._engine = engine
        self._vocabulary = vocabulary
        self._degraded = False
        self._extractor: Optional[FeatureExtractor] = None
        self._loop: Optional[DecodingLoop] = None
        self._state = ModelState.UNINITIALIZED
        self._failure: Optional[str] = None
        self._init_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transcribe")

    # -- lifecycle --------------------------------------------------------------

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def failure(self) -> Optional[str]:
        """Human-readable cause when state is FAILED."""
        return self._failure

    @property
    def degraded(self) -> bool:
        """True when running on the built-in fallback vocabulary."""
        return self._degraded

    @property
    def vocabulary(self) -> Optional[Vocabulary]:
        return self._vocabulary

    def initialize(self) -> ModelState:
        with self._init_lock:
            if self._state in (ModelState.READY, ModelState.CLOSED):
                return self._state
            try:
                self._state = self._build()
                self._failure = None
            except (ConfigurationError, ResourceMissingError, InferenceError, ImportError) as e:
                logger.error("Failed to initialize model: %s", e)
                self._state = ModelState.FAILED
                self._failure = str(e)
            return self._state

    def _build(self) -> ModelState:
        self.config.validate()
        logger.info("Starting model initialization (%s)", self.config.model_id)

        engine = self._engine
        if engine is None:
            if self.model_dir is None:
                raise ResourceMissingError("No model directory or engine provided")
            if self.backend == "onnx":
                check_model_files(self.model_dir)
            engine = create_engine(
                self.model_dir,
                backend=self.backend,
                intra_op_threads=self.config.intra_op_threads,
                inter_op_threads=self.config.inter_op_threads,
            )
        engine.load()

        vocabulary = self._vocabulary
        if vocabulary is None:
            result = load_vocabulary(self.model_dir)
            if result.degraded and not self.allow_degraded_vocabulary:
                engine.close()
                raise ResourceMissingError(
                    "Failed to load tokenizer (tokenizer.json / vocab.json); required for real transcription"
                )
            vocabulary = result.vocabulary
            self._degraded = result.degraded

        self._engine = engine
        self._vocabulary = vocabulary
        self._extractor = FeatureExtractor(self.config)
        self._loop = DecodingLoop(engine, vocabulary.vocab_size, self.config)
        logger.info("Model initialization completed (vocab_size=%d)", vocabulary.vocab_size)
        return ModelState.READY

    def is_initialized(self) -> bool:
        return self._state is ModelState.READY

    def get_info(self) -> dict:
        return {
            "sampleRate": self.config.sample_rate,
            "maxChunkSeconds": self.config.chunk_length,
            "modelId": self.config.model_id,
            "language": self.config.language,
        }

    def close(self) -> None:
        """Release the engine and worker thread. A closed transcriber cannot be re-initialized."""
        with self._init_lock:
            self._state = ModelState.CLOSED
        self._executor.shutdown(wait=True)
        if self._engine is not None:
            self._engine.close()

    def __enter__(self) -> "Transcriber":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- transcription ----------------------------------------------------------

    def transcribe(self, samples: np.ndarray, cancel_event: Optional[threading.Event] = None) -> str:
        """16 kHz mono samples -> text. Audio past 30 s is ignored."""
        self._require_ready()
        samples = np.asarray(samples)
        logger.debug("Starting transcription for audio of length %d", len(samples))
        features = self._extractor.extract(samples)
        return self._run(features, cancel_event)

    def transcribe_from_features(
        self,
        features: np.ndarray,
        used_frames: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Flat mel-major features (n_mels * audio_ctx values, resized if not) -> text."""
        self._require_ready()
        cfg = self.config
        data = fit_features(features, cfg.n_mels, cfg.audio_ctx)
        used = max(0, min(int(used_frames), cfg.audio_ctx))
        tensor = FeatureTensor(data=data, used_frames=used, n_mels=cfg.n_mels, n_frames=cfg.audio_ctx)
        return self._run(tensor, cancel_event)

    def transcribe_file(self, path: str | Path, cancel_event: Optional[threading.Event] = None) -> str:
        return self.transcribe(load_wav(path, self.config.sample_rate), cancel_event)

    def transcribe_async(self, samples: np.ndarray, cancel_event: Optional[threading.Event] = None) -> Future:
        """Run transcribe() on the transcriber's worker thread; returns a Future[str]."""
        self._require_ready()
        return self._executor.submit(self.transcribe, samples, cancel_event)

    def generate(self, features: FeatureTensor, cancel_event: Optional[threading.Event] = None) -> GenerationResult:
        """Encoder + decoding loop; raw token ids, no detokenization."""
        self._require_ready()
        hidden_states = self._engine.run_encoder(features.batched(), features.attention_mask())
        return self._loop.generate(hidden_states, cancel_event=cancel_event)

    def _run(self, features: FeatureTensor, cancel_event: Optional[threading.Event]) -> str:
        t0 = time.perf_counter()
        try:
            result = self.generate(features, cancel_event)
        except InferenceError as e:
            raise TranscriptionError(f"Failed to transcribe: {e}") from e
        text = self._vocabulary.decode(result.tokens, skip_special=True).strip()
        elapsed_ms = (time.perf_counter() - t0) * 1000
        logger.info(
            "Transcription completed: %d tokens (%s) in %.0fms", len(result.tokens), result.stop_reason.value, elapsed_ms
        )
        return text

    def _require_ready(self) -> None:
        if self._state is not ModelState.READY:
            cause = f": {self._failure}" if self._failure else ""
            raise TranscriptionError(f"Model not initialized ({self._state.value}){cause}")
