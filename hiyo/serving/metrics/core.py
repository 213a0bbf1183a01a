# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Generation metrics.

Tracks the numbers that tell you whether local inference is usable:
time to first token, tokens per second, how generations ended, and how
much memory the process is holding. Everything stays local; nothing is
reported anywhere.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass

import psutil
import torch

from hiyo.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

_MB = 1024 * 1024


@dataclass
class RequestMetrics:
    """Stats captured for a single generation."""

    prompt_tokens: int = 0
    generated_tokens: int = 0
    total_time_ms: float = 0.0
    first_token_ms: float = 0.0
    tokens_per_second: float = 0.0
    finish_reason: str = ""
    resident_memory_mb: float = 0.0


class ServingMetrics:
    """
    Accumulates metrics across generations.

    Streams record from the decode worker thread while the caller may be
    reading a summary, so the request list sits behind a lock.
    """

    def __init__(self) -> None:
        self._requests: list[RequestMetrics] = []
        self._lock = threading.Lock()
        self._start_time: float = time.monotonic()

    @property
    def total_requests(self) -> int:
        with self._lock:
            return len(self._requests)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    def record(self, metrics: RequestMetrics) -> None:
        """Save metrics from a finished generation and log them."""
        with self._lock:
            self._requests.append(metrics)
        logger.info(
            "Generation completed",
            extra={
                "prompt_tokens": metrics.prompt_tokens,
                "generated_tokens": metrics.generated_tokens,
                "finish_reason": metrics.finish_reason,
                "total_time_ms": round(metrics.total_time_ms, 2),
                "first_token_ms": round(metrics.first_token_ms, 2),
                "tokens_per_second": round(metrics.tokens_per_second, 2),
                "resident_memory_mb": round(metrics.resident_memory_mb, 1),
            },
        )

    def average_tokens_per_second(self) -> float:
        with self._lock:
            if not self._requests:
                return 0.0
            return sum(r.tokens_per_second for r in self._requests) / len(self._requests)

    def average_ms_per_token(self) -> float:
        tps = self.average_tokens_per_second()
        if tps <= 0:
            return 0.0
        return 1000.0 / tps

    def average_first_token_ms(self) -> float:
        with self._lock:
            timed = [r.first_token_ms for r in self._requests if r.generated_tokens > 0]
        if not timed:
            return 0.0
        return sum(timed) / len(timed)

    def peak_memory_mb(self) -> float:
        with self._lock:
            if not self._requests:
                return 0.0
            return max(r.resident_memory_mb for r in self._requests)

    def finish_reasons(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(r.finish_reason for r in self._requests))

    def summary(self) -> dict[str, object]:
        """Structured summary suitable for logging."""
        return {
            "total_requests": self.total_requests,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "avg_tokens_per_second": round(self.average_tokens_per_second(), 2),
            "avg_ms_per_token": round(self.average_ms_per_token(), 2),
            "avg_first_token_ms": round(self.average_first_token_ms(), 2),
            "peak_memory_mb": round(self.peak_memory_mb(), 1),
            "finish_reasons": self.finish_reasons(),
        }

    @staticmethod
    def get_resident_memory_mb() -> float:
        """Resident set size of this process. Zero if the OS won't say."""
        try:
            return psutil.Process().memory_info().rss / _MB
        except (psutil.Error, OSError):
            return 0.0

    @staticmethod
    def get_gpu_memory_mb() -> float:
        """Peak CUDA memory allocated so far. Zero without CUDA."""
        if torch.cuda.is_available():
            return torch.cuda.max_memory_allocated() / _MB
        return 0.0
