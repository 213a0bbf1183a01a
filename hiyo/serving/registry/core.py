# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Curated list of recommended local models.

These are suggestions, not a whitelist: any `owner/name` directory under
the models directory can be loaded. The registry just gives the CLI
something sensible to show a user who doesn't know where to start.
Sizes are the on-disk footprint of the half-precision weights.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    description: str
    size: str
    parameters: str
    tags: tuple[str, ...] = ()


DEFAULT_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo(
        id="meta-llama/Llama-3.2-1B-Instruct",
        name="Llama 3.2 1B",
        description="Ultra-fast, minimal memory usage. Great for quick tasks.",
        size="2.5 GB",
        parameters="1B",
        tags=("fast", "efficient", "beginner"),
    ),
    ModelInfo(
        id="meta-llama/Llama-3.2-3B-Instruct",
        name="Llama 3.2 3B",
        description="Fast and capable. Best balance of speed and quality.",
        size="6.4 GB",
        parameters="3B",
        tags=("recommended", "balanced", "general"),
    ),
    ModelInfo(
        id="mistralai/Mistral-7B-Instruct-v0.3",
        name="Mistral 7B",
        description="High quality reasoning and instruction following.",
        size="14.5 GB",
        parameters="7B",
        tags=("advanced", "reasoning", "powerful"),
    ),
    ModelInfo(
        id="microsoft/Phi-3-mini-4k-instruct",
        name="Phi-3 Mini",
        description="Microsoft's efficient small model. Strong performance.",
        size="7.6 GB",
        parameters="3.8B",
        tags=("efficient", "microsoft", "quality"),
    ),
    ModelInfo(
        id="Qwen/Qwen2.5-7B-Instruct",
        name="Qwen 2.5 7B",
        description="Strong multilingual capabilities and coding.",
        size="15.2 GB",
        parameters="7B",
        tags=("multilingual", "coding", "advanced"),
    ),
    ModelInfo(
        id="codellama/CodeLlama-7b-Instruct-hf",
        name="CodeLlama 7B",
        description="Optimized for code generation and technical tasks.",
        size="13.5 GB",
        parameters="7B",
        tags=("coding", "technical", "developer"),
    ),
)


def all_models() -> list[ModelInfo]:
    return list(DEFAULT_MODELS)


def get_model(model_id: str) -> ModelInfo | None:
    """Look up a curated model by its exact identifier."""
    for model in DEFAULT_MODELS:
        if model.id == model_id:
            return model
    return None


def models_tagged(tag: str) -> list[ModelInfo]:
    """Every curated model carrying `tag`, in registry order."""
    return [model for model in DEFAULT_MODELS if tag in model.tags]
