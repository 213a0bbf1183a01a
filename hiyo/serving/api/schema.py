# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Request and result types for the generation engine.

Plain frozen dataclasses. Pydantic is for config validation; these are
runtime values that move between threads, so they stay small and immutable.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from hiyo.serving.exceptions import ValidationError
from hiyo.serving.generation.core import GenerationParameters
from hiyo.serving.validation.core import validate_message_content

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class ChatMessage:
    """One turn of a conversation."""

    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValidationError(
                f"Unknown message role {self.role!r}; expected one of {', '.join(ROLES)}"
            )
        object.__setattr__(self, "content", validate_message_content(self.content))


MessageLike = ChatMessage | Mapping[str, str]


def coerce_messages(messages: Iterable[MessageLike]) -> tuple[ChatMessage, ...]:
    """Accept ChatMessage objects or {"role", "content"} mappings."""
    result = []
    for message in messages:
        if isinstance(message, ChatMessage):
            result.append(message)
            continue
        try:
            result.append(ChatMessage(role=message["role"], content=message["content"]))
        except (KeyError, TypeError) as err:
            raise ValidationError(
                "Messages must be ChatMessage instances or mappings with 'role' and 'content'"
            ) from err
    return tuple(result)


@dataclass(frozen=True)
class GenerationRequest:
    """
    A conversation plus the parameters to continue it with.

    Immutable once built. Both parts validate themselves on construction.
    """

    messages: tuple[ChatMessage, ...]
    params: GenerationParameters = field(default_factory=GenerationParameters)


@dataclass(frozen=True)
class DecodedChunk:
    """
    One newly generated token and its text.

    `position` counts from zero within a single generation. The text may be
    empty when the tokenizer could not render the token on its own.
    """

    text: str
    token_id: int
    position: int
    elapsed_ms: float


@dataclass(frozen=True)
class GenerationSummary:
    """How a finished generation went."""

    prompt_tokens: int
    generated_tokens: int
    finish_reason: str
    total_time_ms: float
    first_token_ms: float
    tokens_per_second: float
