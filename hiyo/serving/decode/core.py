# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
The autoregressive decode loop.

This is where tokens actually get produced. Given an already-encoded
prompt, the loop:

  1. Keeps only the most recent tokens that fit the context ceiling.
  2. Runs one forward pass over the prompt minus its last token, which
     fills the KV cache without asking for a prediction.
  3. Feeds exactly one token at a time through the cache-aware forward
     pass, samples the next token, decodes it and yields it.

Each step only computes the newest position because everything earlier
already lives in the cache. That is the whole point of the cache: without
it, step N would redo N positions of attention.

The loop stops on the end-of-sequence token, on the max_tokens cap, when
the cache is full, or when the cancel event is set. Cancellation is only
looked at between steps; a forward pass in flight always finishes.

Every generated token is charged to the resource governor as it is
produced. When the loop ends, for whatever reason, `on_finish` receives
the final DecodeState so the caller can hand the budget back.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

import torch

from hiyo.logging.logger import get_logger
from hiyo.serving.api.schema import DecodedChunk
from hiyo.serving.backend.core import InferenceBackend, KVCache
from hiyo.serving.exceptions import GenerationError, HiyoError
from hiyo.serving.generation.core import (
    MAX_GENERATION_TOKENS,
    GenerationParameters,
    sample_next_token,
)
from hiyo.serving.governor.core import ResourceGovernor

logger: logging.Logger = get_logger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 16384

FINISH_EOS = "eos"
FINISH_LENGTH = "length"
FINISH_CANCELLED = "cancelled"
FINISH_ERROR = "error"

# Emitted by tokenizers for a byte sequence that is not complete UTF-8 yet
_INCOMPLETE_CHAR = "\ufffd"


@dataclass
class DecodeState:
    """
    Mutable state of one decode call.

    Owned by exactly one run of the loop and never shared. `tokens_generated`
    only ever goes up, and it always equals the number of tokens charged to
    the governor by this call.
    """

    prompt_tokens: int
    generated_ids: list[int] = field(default_factory=list)
    cache: KVCache | None = None
    tokens_generated: int = 0
    text: str = ""
    finish_reason: str | None = None
    error: BaseException | None = None
    started_at: float = field(default_factory=time.monotonic)
    first_token_ms: float = 0.0
    total_ms: float = 0.0

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0


def truncate_prompt(tokens: list[int], max_context_tokens: int) -> list[int]:
    """
    Drop the oldest tokens so the prompt fits the context ceiling.

    The end of a conversation is what the model has to answer, so the
    most recent tokens are the ones kept.
    """
    if len(tokens) <= max_context_tokens:
        return list(tokens)

    logger.warning(
        "Prompt truncated",
        extra={
            "original_tokens": len(tokens),
            "kept_tokens": max_context_tokens,
        },
    )
    return list(tokens[-max_context_tokens:])


class DecodeLoop:
    """
    Runs generation for one backend.

    A DecodeLoop can be reused for many calls, but never for two at once:
    the caller makes sure only one `run()` is active per backend. Each
    call builds its own cache and its own DecodeState.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        governor: ResourceGovernor,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        max_generation_tokens: int = MAX_GENERATION_TOKENS,
    ) -> None:
        self._backend = backend
        self._governor = governor
        self._max_context_tokens = max_context_tokens
        self._max_generation_tokens = max_generation_tokens

    @property
    def context_limit(self) -> int:
        """How many prompt tokens a call keeps, given this backend's window."""
        limit = self._max_context_tokens
        backend_limit = self._backend.max_context_length
        if backend_limit is not None:
            limit = min(limit, backend_limit)
        return limit

    def run(
        self,
        prompt_tokens: list[int],
        params: GenerationParameters,
        cancel_event: threading.Event | None = None,
        on_finish: Callable[[DecodeState], None] | None = None,
    ) -> Iterator[DecodedChunk]:
        """
        Generate tokens for `prompt_tokens`, yielding one chunk per token.

        The end-of-sequence token is never yielded and never charged.
        Closing the iterator early counts as cancellation.

        Args:
            prompt_tokens: The encoded prompt. Truncated here if too long.
            params: Sampling parameters; max_tokens is capped again at the
                    configured generation ceiling.
            cancel_event: Checked at the top of every step.
            on_finish: Called exactly once with the final state, on every
                       way out of the loop, before control returns.

        Raises:
            GenerationError: Empty prompt, or the backend failed.
            ResourceError: The governor refused to charge a token.
        """
        state = DecodeState(prompt_tokens=0)
        try:
            prompt = truncate_prompt(prompt_tokens, self.context_limit)
            if not prompt:
                raise GenerationError("Cannot generate from an empty prompt")
            state.prompt_tokens = len(prompt)

            max_new = min(params.max_tokens, self._max_generation_tokens)
            state.cache = self._backend.new_cache(len(prompt) + max_new)
            generator = params.make_generator()

            if len(prompt) > 1:
                self._forward(prompt[:-1], state.cache)
            next_input = prompt[-1]

            for _ in range(max_new):
                if cancel_event is not None and cancel_event.is_set():
                    state.finish_reason = FINISH_CANCELLED
                    break
                if state.cache.is_full:
                    state.finish_reason = FINISH_LENGTH
                    break

                logits = self._forward([next_input], state.cache)
                token_id = sample_next_token(
                    logits, params.temperature, params.top_p, generator
                )
                if token_id in self._backend.eos_token_ids:
                    state.finish_reason = FINISH_EOS
                    break

                self._governor.allocate(1)
                state.tokens_generated += 1
                state.generated_ids.append(token_id)
                if state.tokens_generated == 1:
                    state.first_token_ms = state.elapsed_ms

                yield DecodedChunk(
                    text=self._next_text(state),
                    token_id=token_id,
                    position=state.tokens_generated - 1,
                    elapsed_ms=state.elapsed_ms,
                )
                next_input = token_id
            else:
                state.finish_reason = FINISH_LENGTH

        except GeneratorExit:
            state.finish_reason = FINISH_CANCELLED
            raise
        except BaseException as err:
            state.finish_reason = FINISH_ERROR
            state.error = err
            raise
        finally:
            state.total_ms = state.elapsed_ms
            if state.cache is not None:
                state.cache.reset()
            logger.info(
                "Decode finished",
                extra={
                    "prompt_tokens": state.prompt_tokens,
                    "generated_tokens": state.tokens_generated,
                    "finish_reason": state.finish_reason,
                    "total_time_ms": round(state.total_ms, 2),
                },
            )
            if on_finish is not None:
                on_finish(state)

    def _forward(self, token_ids: list[int], cache: KVCache) -> torch.Tensor:
        try:
            return self._backend.forward_incremental(token_ids, cache)
        except (AssertionError, HiyoError):
            raise
        except Exception as err:
            raise GenerationError(f"Forward pass failed: {err}") from err

    def _next_text(self, state: DecodeState) -> str:
        """
        Text added by the newest token.

        Decoding tokens one by one breaks characters that span several
        tokens, so the whole generated sequence is decoded and only the new
        suffix is returned. While the tail is an incomplete character the
        text is held back and comes out with a later token.
        """
        try:
            full = self._backend.decode(state.generated_ids)
        except Exception as err:
            raise GenerationError(f"Detokenization failed: {err}") from err

        if not full or full.endswith(_INCOMPLETE_CHAR):
            return ""
        new_text = full[len(state.text):]
        state.text = full
        return new_text
