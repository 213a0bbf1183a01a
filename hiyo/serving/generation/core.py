# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Token sampling: the "what token comes next?" decision.

Three knobs combine here:

  1. Greedy (temperature=0.0): always pick the highest-probability token.
     Deterministic; ties go to the lowest vocabulary index.
  2. Temperature: divide logits by temperature before sampling. Higher
     temperature flattens the distribution, lower sharpens it.
  3. Nucleus (top-p): keep only the smallest run of most-likely tokens
     whose probability mass reaches top_p, then sample among those.

The sampler is a pure function. It holds no state, so any thread may call
it. Reproducibility comes from the torch.Generator the caller passes in.
"""

import logging
from dataclasses import dataclass

import torch

from hiyo.logging.logger import get_logger
from hiyo.serving.exceptions import ValidationError

logger: logging.Logger = get_logger(__name__)

GREEDY_EPSILON = 1e-8
MAX_TEMPERATURE = 2.0
MAX_GENERATION_TOKENS = 4096


@dataclass(frozen=True)
class GenerationParameters:
    """
    Sampling parameters for one generation request.

    Validated on construction so a bad value never reaches the decode loop:
    temperature in [0, 2], top_p in (0, 1], max_tokens in [1, 4096].
    A seed makes sampling reproducible; without one, torch's global RNG is used.
    """

    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 1024
    seed: int | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= MAX_TEMPERATURE:
            raise ValidationError(
                f"temperature must be within [0, {MAX_TEMPERATURE}], got {self.temperature}"
            )
        if not 0.0 < self.top_p <= 1.0:
            raise ValidationError(f"top_p must be within (0, 1], got {self.top_p}")
        if not 1 <= self.max_tokens <= MAX_GENERATION_TOKENS:
            raise ValidationError(
                f"max_tokens must be within [1, {MAX_GENERATION_TOKENS}], got {self.max_tokens}"
            )
        if self.seed is not None and self.seed < 0:
            raise ValidationError(f"seed must be non-negative, got {self.seed}")

    def make_generator(self) -> torch.Generator | None:
        """A CPU generator seeded from `seed`, or None for unseeded sampling."""
        if self.seed is None:
            return None
        generator = torch.Generator(device="cpu")
        generator.manual_seed(self.seed)
        return generator


def _check_logits(logits: torch.Tensor) -> torch.Tensor:
    """
    Reduce logits to a 1-D float vector and assert it is usable.

    Anything else means the forward pass broke its contract. That is a
    programming error, not a recoverable generation failure.
    """
    if logits.dim() > 1:
        logits = logits.reshape(-1, logits.size(-1))[-1]

    assert logits.dim() == 1 and logits.numel() > 0, (
        f"Sampler expects a non-empty logits vector, got shape {tuple(logits.shape)}"
    )
    logits = logits.detach().to(device="cpu", dtype=torch.float32)
    assert not torch.isnan(logits).any(), "Sampler received NaN logits"
    return logits


def top_p_mask(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Work out which tokens nucleus sampling throws away.

    Tokens are ranked by probability with a stable sort, so equal
    probabilities keep their vocabulary order. A token is removed when the
    probability mass of everything ranked *before* it already exceeds
    top_p. The top-ranked token has nothing before it and therefore always
    survives, even when its own probability is above top_p.

    Args:
        logits: 1-D logits vector (already temperature-scaled).
        top_p: Nucleus threshold in (0, 1].

    Returns:
        Boolean tensor shaped like `logits`, True where the token is removed.
    """
    probs = torch.softmax(logits, dim=-1)
    sorted_probs, sorted_indices = torch.sort(probs, descending=True, stable=True)
    cumulative = torch.cumsum(sorted_probs, dim=-1)
    remove_sorted = (cumulative - sorted_probs) > top_p
    remove_sorted[0] = False

    mask = torch.zeros_like(remove_sorted)
    mask[sorted_indices] = remove_sorted
    return mask


def sample_next_token(
    logits: torch.Tensor,
    temperature: float,
    top_p: float,
    generator: torch.Generator | None = None,
) -> int:
    """
    Pick the next token from a logits vector.

    Step by step:

      1. Flatten to the last position's logits and sanity-check them.
      2. Temperature 0 (or within GREEDY_EPSILON of it) means arg-max.
         Dividing by zero is undefined, and greedy is what zero means anyway.
      3. Any other temperature except exactly 1.0 scales the logits.
      4. top_p below 1.0 masks the tail of the distribution to -inf.
      5. Sample from the softmax of what remains.

    Args:
        logits: Raw model output for the last position, shape [vocab_size]
                (leading dimensions are allowed and dropped).
        temperature: Softmax temperature, 0 for greedy.
        top_p: Nucleus threshold; 1.0 disables masking.
        generator: Optional torch RNG for reproducible sampling.

    Returns:
        The token ID that was selected.
    """
    logits = _check_logits(logits)

    if temperature <= GREEDY_EPSILON:
        return int(torch.argmax(logits).item())

    scaled = logits
    if temperature != 1.0:
        scaled = logits / temperature

    if top_p < 1.0:
        scaled = scaled.masked_fill(top_p_mask(scaled, top_p), float("-inf"))

    probs = torch.softmax(scaled, dim=-1)
    selected = torch.multinomial(probs, num_samples=1, generator=generator)
    return int(selected.item())
