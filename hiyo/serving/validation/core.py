# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Input validation for everything that crosses into the engine.

Model identifiers end up as directory names on disk, so they are held to
a strict `owner/name` allow-list before the loader touches the filesystem.
Chat messages are checked for the things that break tokenizers or logs:
NUL bytes, stray control characters, absurd lengths.

All checks raise ValidationError and never perform I/O.
"""

import re
import unicodedata

from hiyo.serving.exceptions import ValidationError

MODEL_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+/[a-zA-Z0-9._-]+$")
MAX_MODEL_ID_LENGTH = 100
_BLOCKED_FRAGMENTS = ("..", "./", ":", ";", "|", "&", "$", "`", "\0")

MAX_INPUT_LENGTH = 10_000
MAX_OUTPUT_LENGTH = 50_000
_ALLOWED_CONTROL = {"\n", "\t", "\r"}


def validate_model_identifier(model_id: str) -> str:
    """
    Check that a model identifier looks like `owner/name` and nothing more.

    The pattern already excludes most shell and path characters; the
    fragment blocklist catches the ones it allows in combination, like `..`
    inside the name part.

    Returns:
        The identifier unchanged.

    Raises:
        ValidationError: If the identifier is malformed, suspicious, or too long.
    """
    if not isinstance(model_id, str) or not MODEL_ID_PATTERN.fullmatch(model_id):
        raise ValidationError(
            f"Invalid model identifier {model_id!r}. Use format: owner/model-name"
        )

    for fragment in _BLOCKED_FRAGMENTS:
        if fragment in model_id:
            raise ValidationError("Model identifier contains suspicious characters")

    if len(model_id) > MAX_MODEL_ID_LENGTH:
        raise ValidationError(
            f"Model identifier too long ({len(model_id)} > {MAX_MODEL_ID_LENGTH} characters)"
        )

    return model_id


def validate_message_content(text: str) -> str:
    """
    Validate a single chat message body.

    Leading and trailing whitespace is stripped. Newlines, tabs and carriage
    returns are fine; other control characters are not.

    Returns:
        The stripped text.

    Raises:
        ValidationError: Empty, too long, or containing NUL/control characters.
    """
    trimmed = text.strip()

    if not trimmed:
        raise ValidationError("Input cannot be empty")

    if len(trimmed) > MAX_INPUT_LENGTH:
        raise ValidationError(
            f"Input too long ({len(trimmed)} > {MAX_INPUT_LENGTH} characters)"
        )

    if "\0" in trimmed:
        raise ValidationError("Null bytes not allowed")

    for ch in trimmed:
        if ch in _ALLOWED_CONTROL:
            continue
        if unicodedata.category(ch) == "Cc":
            raise ValidationError("Control characters not allowed")

    return trimmed


def sanitize_output(text: str) -> str:
    """
    Clean up generated text before it is handed to a display layer.

    Output beyond MAX_OUTPUT_LENGTH is cut with a visible notice, NUL bytes
    are removed and line endings are normalised to `\\n`.
    """
    sanitized = text
    if len(sanitized) > MAX_OUTPUT_LENGTH:
        sanitized = sanitized[:MAX_OUTPUT_LENGTH] + "\n\n[Output truncated]"

    sanitized = sanitized.replace("\0", "")
    sanitized = sanitized.replace("\r\n", "\n").replace("\r", "\n")
    return sanitized
