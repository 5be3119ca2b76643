"""Next-token selection from a logits vector."""

from __future__ import annotations

from typing import Optional

import numpy as np


def greedy(logits: np.ndarray) -> int:
    """Index of the largest logit; ties go to the lowest index."""
    return int(np.argmax(logits))


def softmax(logits: np.ndarray) -> np.ndarray:
    """Numerically stable softmax (max subtracted before exponentiating)."""
    shifted = np.asarray(logits, dtype=np.float64) - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


def sample_with_temperature(
    logits: np.ndarray,
    temperature: float,
    rng: Optional[np.random.Generator] = None,
) -> int:
    """
    Draw from softmax(logits / temperature) with one uniform draw and a
    cumulative-probability scan. Falls back to greedy when the scan runs off
    the end (rounding) or the distribution is not finite.
    """
    if temperature == 0:
        return greedy(logits)
    rng = rng or np.random.default_rng()
    probs = softmax(np.asarray(logits, dtype=np.float64) / temperature)
    cumulative = np.cumsum(probs)
    if not np.isfinite(cumulative[-1]):
        return greedy(logits)
    r = rng.random()
    index = int(np.searchsorted(cumulative, r, side="left"))
    if index >= len(cumulative):
        return greedy(logits)
    return index


def select_token(
    logits: np.ndarray,
    temperature: float = 0.0,
    rng: Optional[np.random.Generator] = None,
) -> int:
    if temperature <= 0:
        return greedy(logits)
    return sample_with_temperature(logits, temperature, rng)
