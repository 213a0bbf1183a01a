# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Config loader: reads YAML from disk and produces a validated, frozen HiyoConfig.

The loading pipeline is linear:
  1. Read raw text from the file
  2. Parse as YAML into a plain dict
  3. Hand the dict to pydantic for schema validation
  4. Return the frozen config object

Any failure stops here with a clear error. There are no fallback defaults
for a broken file.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from hiyo.config.exceptions import ConfigLoadError, ConfigValidationError
from hiyo.config.schema import HiyoConfig, RuntimeConfig


def _read_yaml_file(config_path: Path) -> dict[str, Any]:
    """
    Read a YAML file and return the parsed dict.

    Existence is checked up front because yaml.safe_load gives cryptic
    errors on missing files.

    Raises:
        ConfigLoadError: If the file doesn't exist, isn't readable, or isn't valid YAML.
    """
    if not config_path.exists():
        raise ConfigLoadError(f"Config file not found: {config_path}")

    if not config_path.is_file():
        raise ConfigLoadError(f"Config path is not a file: {config_path}")

    try:
        raw_text = config_path.read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigLoadError(f"Cannot read config file {config_path}: {err}") from err

    try:
        parsed = yaml.safe_load(raw_text)
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {config_path}: {err}") from err

    if not isinstance(parsed, dict):
        raise ConfigLoadError(
            f"Config file must contain a YAML mapping (dict), got {type(parsed).__name__}"
        )

    return parsed


def load_config(config_path: Path) -> HiyoConfig:
    """
    Load, validate, and freeze a config file into a HiyoConfig object.

    This is the single entry point for config loading. After it returns the
    config is structurally valid, type-safe, and immutable.

    Args:
        config_path: Path to a YAML config file.

    Returns:
        A fully validated, frozen HiyoConfig instance.

    Raises:
        ConfigLoadError: File I/O or YAML parse failures.
        ConfigValidationError: Schema violations (missing fields, wrong types, unknown keys).
    """
    raw_data = _read_yaml_file(config_path)

    try:
        config = HiyoConfig.model_validate(raw_data)
    except ValidationError as err:
        raise ConfigValidationError(
            f"Config validation failed for {config_path}:\n{err}"
        ) from err

    return config


def require_runtime(config: HiyoConfig | None) -> RuntimeConfig:
    """
    Return the runtime section, or a default one when no config was given.

    A config file that exists but lacks `runtime:` is a user mistake for
    commands that talk to a model, so that case raises instead of guessing.

    Raises:
        ConfigValidationError: The config was loaded but has no runtime section.
    """
    if config is None:
        return RuntimeConfig(config_version="1.0.0")
    if config.runtime is None:
        raise ConfigValidationError(
            "This command needs a 'runtime' section in the config file"
        )
    return config.runtime
