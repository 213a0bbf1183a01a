# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Subcommand handlers for the Hiyo CLI.

Each function here corresponds to one CLI subcommand and returns an exit
code. Diagnostics go through the structured logger; the only thing
written straight to stdout is the generated reply itself.
"""

import argparse
import logging
import sys
from pathlib import Path

from hiyo.cli.exit_codes import (
    CONFIG_ERROR,
    RESOURCE_ERROR,
    RUNTIME_ERROR,
    SUCCESS,
    USER_ERROR,
    VALIDATION_ERROR,
)
from hiyo.config.exceptions import ConfigError
from hiyo.config.loader import load_config, require_runtime
from hiyo.config.schema import HiyoConfig
from hiyo.logging.logger import get_logger
from hiyo.runtime.bootstrap import bootstrap, set_deterministic_seed
from hiyo.serving.exceptions import LoadError, ResourceError, ValidationError


def _load_and_bootstrap(
    args: argparse.Namespace,
    command_name: str,
) -> tuple[int, HiyoConfig | None, logging.Logger]:
    """
    The shared setup that every command needs: load config, run bootstrap.

    Returns a tuple of (exit_code, config, logger). If exit_code is not SUCCESS,
    the caller should return it immediately.
    """
    logger = get_logger(f"hiyo.cli.{command_name}", log_level=args.log_level)

    config = None
    if args.config is not None:
        try:
            config = load_config(Path(args.config))
        except ConfigError as err:
            logger.error(
                "Configuration error",
                extra={"command": command_name, "error": str(err)},
            )
            return CONFIG_ERROR, None, logger

    if config is not None:
        bootstrap(config.global_config)
    else:
        logger.debug(
            "No config provided, running with defaults",
            extra={"command": command_name},
        )

    if args.seed is not None:
        set_deterministic_seed(args.seed)

    return SUCCESS, config, logger


def _build_messages(args: argparse.Namespace) -> list[dict[str, str]]:
    messages = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.prompt})
    return messages


def handle_chat(args: argparse.Namespace) -> int:
    """Load a model, send one message, and stream the reply to stdout."""
    exit_code, config, logger = _load_and_bootstrap(args, "chat")
    if exit_code != SUCCESS:
        return exit_code

    try:
        runtime_cfg = require_runtime(config)
    except ConfigError as err:
        logger.error("Configuration error", extra={"command": "chat", "error": str(err)})
        return CONFIG_ERROR

    model_id = args.model or runtime_cfg.default_model
    if not model_id:
        logger.error("No model given. Use --model or set runtime.default_model")
        return USER_ERROR
    if not args.prompt:
        logger.error("No prompt provided. Use --prompt")
        return USER_ERROR

    from hiyo.serving.api.schema import coerce_messages
    from hiyo.serving.engine.core import ChatEngine
    from hiyo.serving.generation.core import GenerationParameters
    from hiyo.serving.validation.core import validate_model_identifier

    defaults = runtime_cfg.generation
    try:
        validate_model_identifier(model_id)
        messages = coerce_messages(_build_messages(args))
        params = GenerationParameters(
            temperature=defaults.temperature if args.temperature is None else args.temperature,
            top_p=defaults.top_p if args.top_p is None else args.top_p,
            max_tokens=defaults.max_tokens if args.max_tokens is None else args.max_tokens,
            seed=args.seed,
        )
    except ValidationError as err:
        logger.error("Invalid input", extra={"command": "chat", "error": str(err)})
        return VALIDATION_ERROR

    logger.info(
        "Starting chat",
        extra={
            "model_id": model_id,
            "dry_run": args.dry_run,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "top_p": params.top_p,
        },
    )
    if args.dry_run:
        logger.info(
            "Dry run, would generate a reply",
            extra={"messages": len(messages), "max_tokens": params.max_tokens},
        )
        return SUCCESS

    try:
        with ChatEngine(runtime_cfg) as engine:
            engine.load_model(model_id)
            stream = engine.generate(messages, params)
            for text in stream:
                sys.stdout.write(text)
                sys.stdout.flush()
            sys.stdout.write("\n")
            sys.stdout.flush()
            logger.info("Chat complete", extra=engine.metrics.summary())
        return SUCCESS

    except LoadError as err:
        logger.error("Model load failed", extra={"model_id": model_id, "error": str(err)})
        return RUNTIME_ERROR
    except ResourceError as err:
        logger.error("Request refused", extra={"error": str(err)})
        return RESOURCE_ERROR
    except KeyboardInterrupt:
        logger.info("Chat interrupted")
        return USER_ERROR
    except Exception as err:
        logger.error("Chat failed", extra={"error": str(err)}, exc_info=True)
        return RUNTIME_ERROR


def handle_models(args: argparse.Namespace) -> int:
    """List the curated models, optionally filtered by tag."""
    logger = get_logger("hiyo.cli.models", log_level=args.log_level)

    from hiyo.serving.registry.core import all_models, models_tagged

    models = models_tagged(args.tag) if args.tag else all_models()
    if not models:
        logger.warning("No models match", extra={"tag": args.tag})
        return SUCCESS

    for model in models:
        logger.info(
            "Model",
            extra={
                "model_id": model.id,
                "model_name": model.name,
                "parameters": model.parameters,
                "size": model.size,
                "tags": list(model.tags),
                "description": model.description,
            },
        )
    return SUCCESS


def handle_info(args: argparse.Namespace) -> int:
    """Display environment and configuration information."""
    logger = get_logger("hiyo.cli.info", log_level=args.log_level)

    from hiyo import __version__
    from hiyo.runtime.environment import get_system_info

    system_info = get_system_info()

    logger.info(
        "System information",
        extra={
            "hiyo_version": __version__,
            "python_version": system_info.python_version,
            "platform": system_info.platform,
            "architecture": system_info.architecture,
            "torch_version": system_info.torch_version,
            "cuda_available": system_info.cuda_available,
            "mps_available": system_info.mps_available,
            "total_memory_gb": system_info.total_memory_gb,
            "config": args.config,
        },
    )
    return SUCCESS
