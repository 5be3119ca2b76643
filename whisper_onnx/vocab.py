"""
Byte-level BPE vocabulary (decode only).

Pieces are stored in the GPT-2 byte->printable-character alphabet. Loading tries
tokenizer.json, then vocab.json, then builds a minimal ASCII fallback so
transcription can still run (quality undefined).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .errors import DecodeError, VocabularyLoadError

logger = logging.getLogger(__name__)

DECODE_ERROR_SENTINEL = "[DECODE_ERROR]"
FALLBACK_VOCAB_SIZE = 512
FALLBACK_SPECIAL_IDS = (256, 257, 258, 259, 260)
# <|endoftext|>, <|startoftranscript|>, <|en|>, <|ar|>, <|transcribe|>, <|notimestamps|>
COMMON_SPECIAL_IDS = (50257, 50258, 50259, 50272, 50359, 50363)


def _build_bytes_to_unicode() -> dict[int, str]:
    # printable ASCII and Latin-1 map to themselves
    bs = list(range(ord("!"), ord("~") + 1)) + list(range(161, 173)) + list(range(174, 256))
    cs = list(bs)
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {b: chr(c) for b, c in zip(bs, cs)}


_BYTE_ENCODER = _build_bytes_to_unicode()
_BYTE_DECODER = {c: b for b, c in _BYTE_ENCODER.items()}


def bytes_to_unicode() -> dict[int, str]:
    """GPT-2/Whisper byte -> printable character map (256 entries)."""
    return dict(_BYTE_ENCODER)


def unicode_to_bytes() -> dict[str, int]:
    """Inverse of bytes_to_unicode."""
    return dict(_BYTE_DECODER)


class VocabularyTier(str, Enum):
    TOKENIZER_JSON = "tokenizer.json"
    VOCAB_JSON = "vocab.json"
    FALLBACK = "fallback"


class Vocabulary:
    """Token id -> piece table plus the set of special ids. Read-only after construction."""

    def __init__(self, pieces: Sequence[str], special_ids: Iterable[int] = ()):
        self._pieces = tuple(pieces)
        size = len(self._pieces)
        self._special_ids = frozenset(i for i in special_ids if 0 <= i < size)

    @property
    def vocab_size(self) -> int:
        return len(self._pieces)

    def __len__(self) -> int:
        return len(self._pieces)

    @property
    def special_ids(self) -> frozenset[int]:
        return self._special_ids

    def is_special(self, token_id: int) -> bool:
        return token_id in self._special_ids

    def piece(self, token_id: int) -> str:
        return self._pieces[token_id]

    # -- loaders ----------------------------------------------------------------

    @classmethod
    def from_tokenizer_json(cls, path: str | Path) -> "Vocabulary":
        """HF tokenizer.json: model.vocab (piece -> id) and added_tokens with explicit special flags."""
        tok = _read_json_object(path)
        try:
            vocab = tok["model"]["vocab"]
        except (KeyError, TypeError) as e:
            raise VocabularyLoadError(f"{Path(path).name}: missing model.vocab") from e
        piece_to_id = _check_vocab(vocab, path)

        special_ids = set()
        known_ids = set(piece_to_id.values())
        for entry in tok.get("added_tokens") or []:
            if not isinstance(entry, dict) or not _valid_id(entry.get("id")):
                raise VocabularyLoadError(f"{Path(path).name}: malformed added_tokens entry {entry!r}")
            token_id = entry["id"]
            content = entry.get("content", "")
            # added tokens extend the table when they sit past the BPE vocab
            if content and token_id not in known_ids and content not in piece_to_id:
                piece_to_id[content] = token_id
                known_ids.add(token_id)
            if entry.get("special", False):
                special_ids.add(token_id)
                logger.debug("Added special token: %s -> %d", content or "?", token_id)

        vocabulary = cls(_pieces_from_mapping(piece_to_id), special_ids)
        logger.debug("Loaded %d pieces and %d special tokens from %s", len(piece_to_id), len(vocabulary.special_ids), Path(path).name)
        return vocabulary

    @classmethod
    def from_vocab_json(cls, path: str | Path) -> "Vocabulary":
        """Flat piece -> id table; special ids are the common Whisper control tokens."""
        piece_to_id = _check_vocab(_read_json_object(path), path)
        vocabulary = cls(_pieces_from_mapping(piece_to_id), COMMON_SPECIAL_IDS)
        logger.debug("Loaded %s with %d tokens", Path(path).name, len(piece_to_id))
        return vocabulary

    @classmethod
    def fallback(cls) -> "Vocabulary":
        """0-255 -> single characters, 256+ -> placeholders; 256-260 special."""
        pieces = [chr(i) if i < 256 else f"<unk_{i}>" for i in range(FALLBACK_VOCAB_SIZE)]
        return cls(pieces, FALLBACK_SPECIAL_IDS)

    # -- decoding ---------------------------------------------------------------

    def decode(self, ids: Iterable[int], skip_special: bool = True) -> str:
        """
        Token ids -> UTF-8 text. Negative, out-of-range and (optionally) special
        ids are dropped. Invalid UTF-8 is replaced rather than raised; a piece
        that cannot be turned into bytes yields DECODE_ERROR_SENTINEL.
        """
        parts = []
        skipped = 0
        size = len(self._pieces)
        for token_id in ids:
            token_id = int(token_id)
            if token_id < 0 or token_id >= size:
                logger.debug("Skipping out-of-range token id %d (vocab_size=%d)", token_id, size)
                skipped += 1
                continue
            if skip_special and token_id in self._special_ids:
                skipped += 1
                continue
            piece = self._pieces[token_id]
            if piece:
                parts.append(piece)

        logger.debug("Decoded %d tokens, skipped %d", len(parts), skipped)
        if not parts:
            return ""

        try:
            return pieces_to_text("".join(parts))
        except DecodeError as e:
            logger.error("Error converting token string to text: %s", e)
            return DECODE_ERROR_SENTINEL

    def debug_info(self) -> dict:
        return {
            "vocab_size": self.vocab_size,
            "special_tokens_count": len(self._special_ids),
            "byte_mapping_size": len(_BYTE_ENCODER),
            "sample_tokens": [f"{i}->{p}" for i, p in enumerate(self._pieces[:10])],
        }


def pieces_to_bytes(token_string: str) -> bytes:
    """
    Map each character back through the byte decoder. Characters outside the
    byte alphabet are literal Unicode and are re-encoded as UTF-8.
    """
    out = bytearray()
    for ch in token_string:
        b = _BYTE_DECODER.get(ch)
        if b is not None:
            out.append(b)
            continue
        try:
            out.extend(ch.encode("utf-8"))
        except UnicodeEncodeError as e:
            raise DecodeError(f"Cannot encode character U+{ord(ch):04X}") from e
    return bytes(out)


def pieces_to_text(token_string: str) -> str:
    data = pieces_to_bytes(token_string)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Invalid UTF-8 in decoded bytes; replacing malformed sequences")
        return data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class VocabularyLoadResult:
    """Which tier produced the vocabulary, and why earlier tiers were skipped."""

    vocabulary: Vocabulary
    tier: VocabularyTier
    failures: tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return self.tier is VocabularyTier.FALLBACK


def load_vocabulary(model_dir: Optional[str | Path]) -> VocabularyLoadResult:
    """Try tokenizer.json, then vocab.json, then the built-in fallback. Never raises."""
    failures = []
    loaders = (
        (VocabularyTier.TOKENIZER_JSON, Vocabulary.from_tokenizer_json),
        (VocabularyTier.VOCAB_JSON, Vocabulary.from_vocab_json),
    )
    if model_dir is not None:
        for tier, loader in loaders:
            path = Path(model_dir) / tier.value
            try:
                vocabulary = loader(path)
            except VocabularyLoadError as e:
                logger.warning("Failed to load %s: %s", tier.value, e)
                failures.append(str(e))
                continue
            logger.info("Loaded vocabulary from %s (%d tokens)", tier.value, vocabulary.vocab_size)
            return VocabularyLoadResult(vocabulary, tier, tuple(failures))
    else:
        failures.append("no model directory")

    logger.error("All tokenizer loading methods failed, using minimal fallback vocabulary")
    return VocabularyLoadResult(Vocabulary.fallback(), VocabularyTier.FALLBACK, tuple(failures))


def _read_json_object(path: str | Path) -> dict:
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise VocabularyLoadError(f"{path.name} not found") from e
    except (OSError, ValueError) as e:
        raise VocabularyLoadError(f"{path.name}: {e}") from e
    if not isinstance(data, dict):
        raise VocabularyLoadError(f"{path.name}: expected a JSON object")
    return data


def _valid_id(token_id) -> bool:
    return isinstance(token_id, int) and not isinstance(token_id, bool) and token_id >= 0


def _check_vocab(vocab, path: str | Path) -> dict[str, int]:
    if not isinstance(vocab, dict) or not vocab:
        raise VocabularyLoadError(f"{Path(path).name}: vocab must be a non-empty object")
    bad = [piece for piece, token_id in vocab.items() if not _valid_id(token_id)]
    if bad:
        raise VocabularyLoadError(f"{Path(path).name}: invalid ids for pieces {bad[:5]!r}")
    return dict(vocab)


def _pieces_from_mapping(piece_to_id: dict[str, int]) -> list[str]:
    size = max(piece_to_id.values()) + 1
    pieces = [""] * size
    for piece, token_id in piece_to_id.items():
        pieces[token_id] = piece
    return pieces
