# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
CLI entrypoint for Hiyo.

Every operation is a subcommand of `hiyo`. The global options (--config,
--log-level, --dry-run, --seed) are inherited by every subcommand through
argparse's parent parser mechanism.

Usage:
    hiyo chat --model meta-llama/Llama-3.2-1B-Instruct --prompt "Hello"
    hiyo models --tag coding
    hiyo info
"""

import argparse
import sys

from hiyo.cli.commands import handle_chat, handle_info, handle_models
from hiyo.cli.exit_codes import USER_ERROR


def _build_global_parser() -> argparse.ArgumentParser:
    """
    Build the parent parser with global options.

    add_help=False keeps its help text from colliding with the subcommand
    parsers that inherit from it.
    """
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file.",
    )
    parent.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging verbosity level.",
    )
    parent.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        dest="dry_run",
        help="Validate inputs without loading a model.",
    )
    parent.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override the random seed (takes precedence over config).",
    )
    return parent


def _register_subcommands(
    subparsers: argparse._SubParsersAction,  # type: ignore[type-arg]
    parent: argparse.ArgumentParser,
) -> None:
    commands = [
        ("chat", "Send one message to a local model and stream the reply.", handle_chat),
        ("models", "List recommended models.", handle_models),
        ("info", "Display environment and config info.", handle_info),
    ]

    for name, help_text, handler in commands:
        parser = subparsers.add_parser(name, parents=[parent], help=help_text)
        parser.set_defaults(func=handler)

    chat_parser = subparsers.choices["chat"]
    chat_parser.add_argument("--model", type=str, default=None, help="Model identifier, owner/name.")
    chat_parser.add_argument("--prompt", type=str, default=None, help="The user message.")
    chat_parser.add_argument("--system", type=str, default=None, help="Optional system message.")
    chat_parser.add_argument("--temperature", type=float, default=None)
    chat_parser.add_argument("--top-p", type=float, default=None, dest="top_p")
    chat_parser.add_argument("--max-tokens", type=int, default=None, dest="max_tokens")

    models_parser = subparsers.choices["models"]
    models_parser.add_argument("--tag", type=str, default=None, help="Only models with this tag.")


def main() -> None:
    """
    Main CLI entrypoint. This is what pyproject.toml's [project.scripts] points to.

    If no subcommand is given, we show help and exit with USER_ERROR.
    """
    parent = _build_global_parser()

    root_parser = argparse.ArgumentParser(
        prog="hiyo",
        description="Hiyo: local LLM chat, entirely on your own hardware.",
        parents=[parent],
    )
    subparsers = root_parser.add_subparsers(dest="command")
    _register_subcommands(subparsers, parent)

    args = root_parser.parse_args()

    if not hasattr(args, "func") or args.func is None:
        root_parser.print_help()
        sys.exit(USER_ERROR)

    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
