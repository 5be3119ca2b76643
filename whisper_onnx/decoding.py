"""
Autoregressive token generation without KV cache.

Each step re-runs the decoder over prompt + generated tokens and selects the
next token from the last position's logits. Generation stops on end-of-text,
an out-of-vocabulary id, a repetition stall, cancellation, or the step limit.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from .config import DEFAULT_MODEL_CONFIG, ModelConfig
from .engine import InferenceEngine, last_token_logits
from .errors import GenerationCancelled, InferenceError
from .sampling import select_token

logger = logging.getLogger(__name__)

# Stall guard: more than 10 generated tokens and the last 5 identical
REPETITION_MIN_TOKENS = 10
REPETITION_WINDOW = 5


class StopReason(str, Enum):
    END_OF_TEXT = "end_of_text"
    INVALID_TOKEN = "invalid_token"
    REPETITION = "repetition"
    MAX_STEPS = "max_steps"


@dataclass
class DecodingState:
    prompt: tuple[int, ...]
    generated: list[int] = field(default_factory=list)
    step: int = 0
    stop_reason: Optional[StopReason] = None

    @property
    def input_ids(self) -> list[int]:
        return list(self.prompt) + self.generated

    @property
    def finished(self) -> bool:
        return self.stop_reason is not None


@dataclass(frozen=True)
class GenerationResult:
    """Generated ids (prompt excluded, end-of-text never included)."""

    tokens: tuple[int, ...]
    stop_reason: StopReason
    steps: int


def is_repetition_stall(generated: list[int]) -> bool:
    if len(generated) <= REPETITION_MIN_TOKENS:
        return False
    tail = generated[-REPETITION_WINDOW:]
    return all(t == tail[-1] for t in tail)


class DecodingLoop:
    """
    Drives the decoder one token at a time. Holds no per-request state, so a
    single loop can serve concurrent requests as long as the engine can.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        vocab_size: int,
        config: ModelConfig = DEFAULT_MODEL_CONFIG,
        rng: Optional[np.random.Generator] = None,
    ):
        self.engine = engine
        self.vocab_size = vocab_size
        self.config = config
        self.rng = rng or np.random.default_rng(config.seed)

    def generate(
        self,
        hidden_states: np.ndarray,
        max_steps: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> GenerationResult:
        """
        Run up to `max_steps` decoder passes (default config.max_new_tokens).
        InferenceError from any step propagates; no partial result is returned.
        """
        cfg = self.config
        max_steps = cfg.max_new_tokens if max_steps is None else max_steps
        # sequence can never outgrow the decoder's text context
        max_steps = max(0, min(max_steps, cfg.text_ctx - len(cfg.prompt_token_ids)))
        temperature = cfg.temperature if temperature is None else temperature
        state = DecodingState(prompt=tuple(cfg.prompt_token_ids))

        while state.step < max_steps:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(f"Generation cancelled after {state.step} steps")
            token = self._step(state, hidden_states, temperature)
            state.step += 1
            logger.debug("Step %d: token %d", state.step, token)

            if token == cfg.end_of_text_token_id:
                state.stop_reason = StopReason.END_OF_TEXT
                break
            if token < 0 or token >= self.vocab_size:
                state.stop_reason = StopReason.INVALID_TOKEN
                break
            state.generated.append(token)
            if is_repetition_stall(state.generated):
                state.stop_reason = StopReason.REPETITION
                break

        if state.stop_reason is None:
            state.stop_reason = StopReason.MAX_STEPS
        logger.debug("Generated %d tokens in %d steps (%s)", len(state.generated), state.step, state.stop_reason.value)
        return GenerationResult(tuple(state.generated), state.stop_reason, state.step)

    def _step(self, state: DecodingState, hidden_states: np.ndarray, temperature: float) -> int:
        # per-step arrays are locals: released on return or raise
        input_ids = np.asarray([state.input_ids], dtype=np.int64)
        try:
            logits = self.engine.run_decoder(input_ids, hidden_states)
        except InferenceError:
            raise
        except Exception as e:
            raise InferenceError(f"Decoder failed at step {state.step}: {e}") from e
        last = np.asarray(last_token_logits(logits), dtype=np.float64)
        return select_token(last, temperature, self.rng)
