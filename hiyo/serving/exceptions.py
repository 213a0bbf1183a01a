# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Error taxonomy for the generation engine.

Every failure the engine reports to its caller is one of these. All of them
are recoverable: pick another model, wait and retry, shorten the input, or
start a new generation. The engine itself never retries.

Cancellation is deliberately absent. A cancelled generation is a normal
ending, not an error. Collaborator contract violations (a forward pass that
returns logits the sampler cannot read) surface as AssertionError and are
meant to be loud.
"""


class HiyoError(Exception):
    """Base for all engine errors."""


class ValidationError(HiyoError):
    """
    Input rejected before any I/O happened: a malformed model identifier,
    an empty or oversized message, out-of-range sampling parameters.
    """


class LoadError(HiyoError):
    """Loading a model failed: missing directory, bad weights, library error."""


class LoadCancelled(LoadError):
    """
    A newer load (or an unload) superseded this one.

    Only the lifecycle manager sees this. `load()` turns it into a no-op.
    """


class ResourceError(HiyoError):
    """The resource governor turned a request away. Wait or shorten the input."""


class RateLimited(ResourceError):
    """Too many requests in the trailing second or minute."""


class ContextTooLarge(ResourceError):
    """The allocation would push in-flight tokens over the global ceiling."""


class InvalidTokenCount(ResourceError):
    """The allocation is zero, negative, or above the single-call ceiling."""


class MemoryPressure(ResourceError):
    """Resident memory is above the configured share of physical memory."""


class GenerationError(HiyoError):
    """The forward pass or token decoding failed mid-generation."""


class ModelNotLoadedError(GenerationError):
    """Generation was requested while no model is loaded."""


class EngineBusyError(GenerationError):
    """Another generation currently holds the model. Only one runs at a time."""
