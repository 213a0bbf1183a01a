# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Type-safe configuration schemas for Hiyo.

Every config section is a frozen pydantic model. Once created it cannot be
mutated; engine components receive the section they need and keep it.

The models use pydantic v2's ConfigDict with:
  - frozen=True: immutability after construction
  - extra="forbid": unknown fields cause immediate failure
  - validate_default=True: even defaults get type-checked

The numeric defaults are the engine's production limits. They are
configuration, not physics: tests and small machines override them.
"""


from pydantic import BaseModel, ConfigDict, Field, model_validator


class GlobalConfig(BaseModel):
    """
    Cross-cutting settings that apply to the whole process.

    Controls reproducibility (seed), observability (log_level, log_file),
    and project identity.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(
        description="Schema version for compatibility tracking, e.g. '1.0.0'"
    )
    project_name: str = Field(
        default="hiyo", description="Human-readable project identifier"
    )
    seed: int = Field(
        default=42,
        ge=0,
        description="Global random seed propagated to all subsystems",
    )
    log_level: str = Field(
        default="INFO",
        description="One of DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path for file-based log output",
    )


class GovernorConfig(BaseModel):
    """
    Limits enforced by the resource governor.

    Token ceilings bound how much prompt and generation work may be in
    flight. The rate windows stop a runaway caller from hammering the model.
    The memory fraction is the resident-memory share above which new
    requests are turned away.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    max_concurrent_tokens: int = Field(
        default=10_000,
        ge=1,
        description="Global ceiling on tokens reserved across all in-flight requests",
    )
    max_tokens_per_call: int = Field(
        default=8192,
        ge=1,
        description="Largest single allocation the governor accepts",
    )
    max_requests_per_second: int = Field(
        default=10,
        ge=1,
        description="Requests admitted within any trailing 1 second window",
    )
    max_requests_per_minute: int = Field(
        default=60,
        ge=1,
        description="Requests admitted within any trailing 60 second window",
    )
    memory_fraction: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Reject admission when resident memory exceeds this share of physical memory",
    )


class GenerationDefaults(BaseModel):
    """Default sampling parameters and the hard ceilings of the decode loop."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Softmax temperature; 0 means greedy decoding",
    )
    top_p: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Nucleus sampling threshold",
    )
    max_tokens: int = Field(
        default=1024,
        ge=1,
        le=4096,
        description="Tokens generated per reply unless the request says otherwise",
    )
    max_context_tokens: int = Field(
        default=16384,
        ge=1,
        description="Prompts longer than this keep only their most recent tokens",
    )
    max_generation_tokens: int = Field(
        default=4096,
        ge=1,
        description="Hard ceiling on tokens generated by one call",
    )

    @model_validator(mode="after")
    def _max_tokens_within_ceiling(self) -> "GenerationDefaults":
        if self.max_tokens > self.max_generation_tokens:
            raise ValueError(
                f"max_tokens ({self.max_tokens}) exceeds max_generation_tokens "
                f"({self.max_generation_tokens})"
            )
        return self


class RuntimeConfig(BaseModel):
    """Inference runtime settings: where models live and how they run."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(description="Schema version")
    models_directory: str = Field(
        default="models",
        description="Directory holding one sub-directory per local model (owner_name)",
    )
    device: str = Field(
        default="auto",
        description="'auto', 'cpu', 'cuda' or 'mps'",
    )
    default_model: str | None = Field(
        default=None,
        description="Model identifier used when a command does not name one",
    )
    verify_checksums: bool = Field(
        default=True,
        description="Check weights against checksums.sha256 when the model ships one",
    )
    stream_queue_size: int = Field(
        default=64,
        ge=1,
        description="Chunks buffered between the decode worker and the consumer",
    )
    generation: GenerationDefaults = Field(default_factory=GenerationDefaults)
    governor: GovernorConfig = Field(default_factory=GovernorConfig)


class HiyoConfig(BaseModel):
    """
    Top-level config container.

    A YAML file may carry just `global:`, or `global:` plus `runtime:`.
    Commands that need the runtime section check for it themselves.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    global_config: GlobalConfig = Field(alias="global")
    runtime: RuntimeConfig | None = Field(default=None)
