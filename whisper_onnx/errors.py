"""
Error taxonomy for the feature/decoding core.

Feature extraction never raises; vocabulary loading degrades through its tiers;
inference failures surface to callers as a single TranscriptionError.
"""

from __future__ import annotations


class WhisperOnnxError(Exception):
    """Base class for all errors raised by whisper_onnx."""


class ConfigurationError(WhisperOnnxError, ValueError):
    """Invalid filter-bank or model configuration parameters."""


class ResourceMissingError(WhisperOnnxError, FileNotFoundError):
    """A required model or vocabulary asset is absent."""


class VocabularyLoadError(WhisperOnnxError):
    """A token table could not be read; the loader moves on to the next source."""


class InferenceError(WhisperOnnxError, RuntimeError):
    """The external encoder/decoder failed or returned a malformed tensor."""


class TranscriptionError(WhisperOnnxError):
    """A transcription request failed. No partial text is returned."""


class DecodeError(WhisperOnnxError):
    """Token pieces could not be turned back into bytes."""


class GenerationCancelled(WhisperOnnxError):
    """The caller cancelled generation between decoding steps."""
