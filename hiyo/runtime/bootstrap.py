# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Runtime bootstrap for Hiyo.

The one-time setup every CLI command goes through before touching a model:
  1. Validate the environment (Python version)
  2. Seed every source of randomness
  3. Initialize the logger
  4. Log what machine we are on

Seeding here makes unseeded sampling repeatable run to run; a request
that carries its own seed still gets its own generator.
"""

import os
import random
from pathlib import Path

import torch

from hiyo.config.schema import GlobalConfig
from hiyo.logging.logger import get_logger
from hiyo.runtime.environment import check_minimum_python, get_system_info


def set_deterministic_seed(seed: int) -> None:
    """
    Lock down Python's and torch's RNGs to `seed`.

    Args:
        seed: Integer seed value. Must be >= 0.
    """
    random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def bootstrap(config: GlobalConfig) -> None:
    """
    Run the bootstrap sequence.

    Args:
        config: The validated global configuration.
    """
    check_minimum_python()
    set_deterministic_seed(config.seed)

    log_file = Path(config.log_file) if config.log_file is not None else None
    logger = get_logger("hiyo.runtime", log_level=config.log_level, log_file=log_file)

    system_info = get_system_info()
    logger.info(
        "Hiyo bootstrap complete",
        extra={
            "seed": config.seed,
            "python_version": system_info.python_version,
            "platform": system_info.platform,
            "architecture": system_info.architecture,
            "torch_version": system_info.torch_version,
            "cuda_available": system_info.cuda_available,
            "mps_available": system_info.mps_available,
            "total_memory_gb": system_info.total_memory_gb,
        },
    )
