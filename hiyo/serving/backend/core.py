# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Inference backend: the boundary between the engine and the model library.

The decode loop never touches torch modules or tokenizers directly. It
talks to an InferenceBackend, which offers exactly five things: encode,
decode, a fresh KV cache, an incremental forward pass over that cache, and
the set of end-of-sequence token ids. Anything that satisfies the protocol
works, which is how the tests drive the engine with scripted logits
instead of real weights.

TransformersBackend is the production implementation. Weights come from
`transformers`, the tokenizer from the `tokenizers` library, and the cache
is the library's own past-key-values object wrapped in KVCache so the
engine can see how full it is.
"""

import gc
import logging
from typing import Any, Protocol, runtime_checkable

import torch

from hiyo.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)


def clear_device_cache(device: torch.device) -> None:
    """
    Hand cached allocator memory back to the device.

    Called after a model's weights are dropped. On CPU there is no device
    cache; a garbage-collection pass is all we can do.
    """
    gc.collect()
    if device.type == "cuda" and torch.cuda.is_available():
        torch.cuda.empty_cache()
    elif device.type == "mps" and hasattr(torch, "mps") and torch.backends.mps.is_available():
        torch.mps.empty_cache()


class KVCache:
    """
    Position-tracking wrapper around a library KV cache.

    The model library owns the actual key/value tensors (`past`). This
    class keeps the write cursor and the capacity so the decode loop can
    stop cleanly instead of overflowing the model's context window.

    A cache belongs to one decode call. It is never shared.
    """

    def __init__(self, max_seq_len: int, past: Any = None) -> None:
        self._max_seq_len = max_seq_len
        self._current_len = 0
        self.past = past

    @property
    def current_length(self) -> int:
        return self._current_len

    @property
    def max_length(self) -> int:
        return self._max_seq_len

    @property
    def is_full(self) -> bool:
        return self._current_len >= self._max_seq_len

    @property
    def remaining_capacity(self) -> int:
        return self._max_seq_len - self._current_len

    def check_capacity(self, steps: int) -> None:
        """Fail before a forward pass that would write past the end."""
        end_pos = self._current_len + steps
        if end_pos > self._max_seq_len:
            raise RuntimeError(
                f"KV cache overflow: trying to write to position {end_pos} "
                f"but max is {self._max_seq_len}"
            )

    def advance(self, steps: int = 1) -> None:
        """Move the write cursor forward after processing new tokens."""
        self._current_len = min(self._current_len + steps, self._max_seq_len)

    def reset(self) -> None:
        """Forget everything cached."""
        self._current_len = 0
        self.past = None


@runtime_checkable
class InferenceBackend(Protocol):
    """
    What the decode loop needs from a model library.

    All calls are treated as opaque, potentially slow, and not cancellable.
    """

    eos_token_ids: frozenset[int]
    max_context_length: int | None

    def encode(self, text: str) -> list[int]: ...

    def decode(self, token_ids: list[int]) -> str | None: ...

    def new_cache(self, max_seq_len: int) -> KVCache: ...

    def forward_incremental(self, token_ids: list[int], cache: KVCache) -> torch.Tensor: ...

    def close(self) -> None: ...


class TransformersBackend:
    """
    InferenceBackend over a `transformers` causal LM and a `tokenizers` tokenizer.

    The model is expected in eval mode on `device`. Forward passes run under
    no_grad and feed the library's past-key-values back in, so each decode
    step only computes the newest position.
    """

    def __init__(
        self,
        model: torch.nn.Module,
        tokenizer: Any,
        device: torch.device,
        eos_token_ids: frozenset[int],
        max_context_length: int | None = None,
    ) -> None:
        self._model: torch.nn.Module | None = model
        self._tokenizer = tokenizer
        self._device = device
        self.eos_token_ids = eos_token_ids
        self.max_context_length = max_context_length

    @property
    def device(self) -> torch.device:
        return self._device

    def parameter_count(self) -> int:
        if self._model is None:
            return 0
        return sum(p.numel() for p in self._model.parameters())

    def encode(self, text: str) -> list[int]:
        """Turn text into token IDs using the loaded tokenizer."""
        return list(self._tokenizer.encode(text).ids)

    def decode(self, token_ids: list[int]) -> str | None:
        """Turn token IDs back into text; special tokens are dropped."""
        if not token_ids:
            return ""
        return self._tokenizer.decode(token_ids, skip_special_tokens=True)

    def new_cache(self, max_seq_len: int) -> KVCache:
        if self.max_context_length is not None:
            max_seq_len = min(max_seq_len, self.max_context_length)

        from transformers import DynamicCache

        return KVCache(max_seq_len=max_seq_len, past=DynamicCache())

    @torch.no_grad()
    def forward_incremental(self, token_ids: list[int], cache: KVCache) -> torch.Tensor:
        """
        Run the new tokens through the model on top of what the cache holds.

        Returns the logits for the last position only, shape [vocab_size].
        """
        if self._model is None:
            raise RuntimeError("Backend is closed")

        cache.check_capacity(len(token_ids))
        input_tensor = torch.tensor([token_ids], dtype=torch.long, device=self._device)
        output = self._model(
            input_ids=input_tensor,
            past_key_values=cache.past,
            use_cache=True,
        )
        cache.past = output.past_key_values
        cache.advance(len(token_ids))

        # output.logits is [batch, seq_len, vocab_size]
        return output.logits[0, -1, :]

    def close(self) -> None:
        """Drop the weights and give the device memory back."""
        if self._model is None:
            return
        self._model = None
        clear_device_cache(self._device)
        logger.info("Backend released", extra={"device": str(self._device)})
