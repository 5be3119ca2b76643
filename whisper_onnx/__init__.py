# whisper_onnx: Whisper log-mel features, byte-level BPE decoding and greedy generation (CPU)

from .config import ModelConfig, Normalization, DEFAULT_MODEL_CONFIG
from .errors import (
    WhisperOnnxError,
    ConfigurationError,
    ResourceMissingError,
    VocabularyLoadError,
    InferenceError,
    TranscriptionError,
    DecodeError,
    GenerationCancelled,
)
from .mel_filters import MelFilterBank, build_mel_filter_bank
from .features import FeatureExtractor, FeatureTensor
from .vocab import Vocabulary, VocabularyLoadResult, VocabularyTier, bytes_to_unicode, load_vocabulary
from .engine import InferenceEngine, OnnxEngine, TorchScriptEngine
from .decoding import DecodingLoop, GenerationResult, StopReason
from .transcriber import ModelState, Transcriber

__all__ = [
    "ModelConfig",
    "Normalization",
    "DEFAULT_MODEL_CONFIG",
    "WhisperOnnxError",
    "ConfigurationError",
    "ResourceMissingError",
    "VocabularyLoadError",
    "InferenceError",
    "TranscriptionError",
    "DecodeError",
    "GenerationCancelled",
    "MelFilterBank",
    "build_mel_filter_bank",
    "FeatureExtractor",
    "FeatureTensor",
    "Vocabulary",
    "VocabularyLoadResult",
    "VocabularyTier",
    "bytes_to_unicode",
    "load_vocabulary",
    "InferenceEngine",
    "OnnxEngine",
    "TorchScriptEngine",
    "DecodingLoop",
    "GenerationResult",
    "StopReason",
    "ModelState",
    "Transcriber",
]
