# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
CLI smoke tests.

CLI tests verify that:
  - commands execute
  - exit codes are correct
  - help text exists

We use subprocess to test the actual CLI entrypoint the way a user would.
This catches issues that unit tests miss, like broken imports or entrypoint
registration. Importing torch and transformers is slow, so the timeout is
generous.
"""

import subprocess
import sys
from pathlib import Path

import pytest


def _run_cli(*args: str) -> subprocess.CompletedProcess[str]:
    """Run `hiyo` with the given arguments and capture output."""
    return subprocess.run(
        [sys.executable, "-m", "hiyo.cli.main", *args],
        capture_output=True,
        text=True,
        timeout=60,
    )


class TestHelpTexts:
    """Every subcommand must have working --help output."""

    @pytest.mark.parametrize("subcommand", ["chat", "models", "info"])
    def test_subcommand_help_exits_zero(self, subcommand: str) -> None:
        result = _run_cli(subcommand, "--help")
        assert result.returncode == 0
        assert "usage" in result.stdout.lower()

    def test_chat_help_lists_sampling_options(self) -> None:
        result = _run_cli("chat", "--help")
        for option in ("--model", "--prompt", "--temperature", "--top-p", "--max-tokens"):
            assert option in result.stdout

    def test_root_help_exits_with_user_error(self) -> None:
        """Running hiyo with no args should show help and exit with USER_ERROR (1)."""
        result = _run_cli()
        assert result.returncode == 1


class TestSubcommandExecution:
    def test_info_runs_without_config(self) -> None:
        result = _run_cli("info")
        assert result.returncode == 0
        assert "torch_version" in result.stdout

    def test_models_lists_registry(self) -> None:
        result = _run_cli("models")
        assert result.returncode == 0
        assert "meta-llama/Llama-3.2-1B-Instruct" in result.stdout

    def test_models_output_carries_model_names(self) -> None:
        result = _run_cli("models")
        assert result.returncode == 0
        assert "Traceback" not in result.stderr
        assert "\"model_name\": \"Llama 3.2 1B\"" in result.stdout

    def test_models_tag_filter(self) -> None:
        result = _run_cli("models", "--tag", "coding")
        assert result.returncode == 0
        assert "codellama/CodeLlama-7b-Instruct-hf" in result.stdout
        assert "meta-llama/Llama-3.2-1B-Instruct" not in result.stdout


class TestChatExitCodes:
    def test_no_model_is_a_user_error(self) -> None:
        result = _run_cli("chat", "--prompt", "hello")
        assert result.returncode == 1

    def test_no_prompt_is_a_user_error(self) -> None:
        result = _run_cli("chat", "--model", "owner/model")
        assert result.returncode == 1

    def test_invalid_model_identifier(self) -> None:
        result = _run_cli("chat", "--model", "../../etc/passwd", "--prompt", "hello")
        assert result.returncode == 4

    def test_out_of_range_temperature(self) -> None:
        result = _run_cli(
            "chat", "--model", "owner/model", "--prompt", "hello", "--temperature", "3.5"
        )
        assert result.returncode == 4

    def test_zero_max_tokens_is_rejected(self) -> None:
        result = _run_cli(
            "chat", "--model", "owner/model", "--prompt", "hello", "--max-tokens", "0", "--dry-run"
        )
        assert result.returncode == 4

    def test_dry_run_validates_without_loading(self) -> None:
        result = _run_cli("chat", "--model", "owner/model", "--prompt", "hello", "--dry-run")
        assert result.returncode == 0
        assert "Dry run" in result.stdout

    def test_missing_model_directory(self, runtime_config_file: Path) -> None:
        result = _run_cli(
            "chat",
            "--config",
            str(runtime_config_file),
            "--model",
            "owner/not-downloaded",
            "--prompt",
            "hello",
        )
        assert result.returncode == 3
        assert "Model load failed" in result.stdout

    def test_config_without_runtime_section(self, tmp_config_file: Path) -> None:
        result = _run_cli(
            "chat", "--config", str(tmp_config_file), "--model", "owner/model", "--prompt", "hi"
        )
        assert result.returncode == 2

    def test_invalid_config(self, invalid_config_file: Path) -> None:
        result = _run_cli("chat", "--config", str(invalid_config_file), "--prompt", "hi")
        assert result.returncode == 2

    def test_broken_yaml(self, broken_yaml_file: Path) -> None:
        result = _run_cli("chat", "--config", str(broken_yaml_file), "--prompt", "hi")
        assert result.returncode == 2
