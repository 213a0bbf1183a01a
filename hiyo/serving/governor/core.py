# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Resource governor: admission control and token budgeting.

Every generation passes through here twice. First `admit()` decides whether
the request may start at all: it enforces two sliding rate windows (per
second and per minute) and refuses work when the process is already using
too much of the machine's memory. Then `allocate()`/`release()` keep a
running total of tokens in flight so a single huge prompt, or many
overlapping ones, cannot run the process out of memory.

The memory check is a liveness guard, not a hard cap. A request can pass
the check and still push memory up afterwards; that is accepted. When in
doubt the governor errs towards rejecting.

The ledger is the only engine state touched by more than one caller at a
time, so every mutation happens under a single lock.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from hiyo.config.schema import GovernorConfig
from hiyo.logging.logger import get_logger
from hiyo.serving.exceptions import (
    ContextTooLarge,
    InvalidTokenCount,
    MemoryPressure,
    RateLimited,
)

logger: logging.Logger = get_logger(__name__)

SECOND_WINDOW = 1.0
MINUTE_WINDOW = 60.0


@dataclass(frozen=True)
class MemoryReading:
    """Resident memory of this process against the machine's physical memory."""

    resident_bytes: int
    physical_bytes: int

    @property
    def fraction(self) -> float:
        if self.physical_bytes <= 0:
            return 0.0
        return self.resident_bytes / self.physical_bytes


def read_process_memory() -> MemoryReading:
    """
    Ask the OS how much memory we hold.

    A failed probe reads as zero usage. Missing one reading is better than
    refusing every request because the probe is broken.
    """
    try:
        resident = psutil.Process().memory_info().rss
        physical = psutil.virtual_memory().total
    except (psutil.Error, OSError) as err:
        logger.warning("Memory probe failed", extra={"error": str(err)})
        return MemoryReading(resident_bytes=0, physical_bytes=0)
    return MemoryReading(resident_bytes=resident, physical_bytes=physical)


@dataclass(frozen=True)
class TokenBudgetLedger:
    """Point-in-time copy of the governor's counters."""

    active_tokens: int
    requests_last_second: int
    requests_last_minute: int
    last_memory: MemoryReading | None


class ResourceGovernor:
    """
    Grants or denies admission and tracks the token budget.

    One instance is shared by the whole engine. The clock and the memory
    probe are injectable so tests can drive time and memory by hand.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        memory_probe: Callable[[], MemoryReading] = read_process_memory,
    ) -> None:
        self._config = config or GovernorConfig()
        self._clock = clock
        self._memory_probe = memory_probe
        self._lock = threading.Lock()
        self._active_tokens = 0
        self._timestamps: deque[float] = deque()
        self._last_memory: MemoryReading | None = None

    @property
    def config(self) -> GovernorConfig:
        return self._config

    @property
    def active_tokens(self) -> int:
        with self._lock:
            return self._active_tokens

    def admit(self) -> None:
        """
        Decide whether a new request may start.

        Called once per generation, before any tokens are allocated. A
        rejected request leaves no trace in the rate windows.

        Raises:
            RateLimited: Too many requests in the last second or minute.
            MemoryPressure: Resident memory is above the configured share.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            in_last_second = sum(1 for ts in self._timestamps if now - ts < SECOND_WINDOW)
            if in_last_second >= self._config.max_requests_per_second:
                logger.warning(
                    "Request rejected: per-second rate limit",
                    extra={"requests_last_second": in_last_second},
                )
                raise RateLimited("Too many requests per second")

            if len(self._timestamps) >= self._config.max_requests_per_minute:
                logger.warning(
                    "Request rejected: per-minute rate limit",
                    extra={"requests_last_minute": len(self._timestamps)},
                )
                raise RateLimited("Too many requests per minute")

            self._check_memory_locked()
            self._timestamps.append(now)

    def check_memory_pressure(self) -> MemoryReading:
        """
        Run the memory check on its own.

        Raises:
            MemoryPressure: Resident memory is above the configured share.
        """
        with self._lock:
            return self._check_memory_locked()

    def allocate(self, count: int) -> None:
        """
        Reserve budget for `count` prompt or generation tokens.

        Raises:
            InvalidTokenCount: count <= 0 or above the single-call ceiling.
            ContextTooLarge: the reservation would exceed the global ceiling.
        """
        if count <= 0 or count > self._config.max_tokens_per_call:
            raise InvalidTokenCount(
                f"Invalid token count {count} (allowed 1..{self._config.max_tokens_per_call})"
            )

        with self._lock:
            if self._active_tokens + count > self._config.max_concurrent_tokens:
                logger.warning(
                    "Token allocation rejected",
                    extra={
                        "requested": count,
                        "active_tokens": self._active_tokens,
                        "ceiling": self._config.max_concurrent_tokens,
                    },
                )
                raise ContextTooLarge(
                    "Context window exceeded. Start a new conversation."
                )
            self._active_tokens += count

    def release(self, count: int) -> None:
        """
        Return budget. Safe to call on any error path, never goes negative.
        """
        if count <= 0:
            return
        with self._lock:
            self._active_tokens = max(0, self._active_tokens - count)

    def snapshot(self) -> TokenBudgetLedger:
        """Copy the counters for diagnostics without holding the lock afterwards."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            return TokenBudgetLedger(
                active_tokens=self._active_tokens,
                requests_last_second=sum(
                    1 for ts in self._timestamps if now - ts < SECOND_WINDOW
                ),
                requests_last_minute=len(self._timestamps),
                last_memory=self._last_memory,
            )

    def _prune(self, now: float) -> None:
        # Timestamps arrive in order, so stale ones are always at the left
        while self._timestamps and now - self._timestamps[0] >= MINUTE_WINDOW:
            self._timestamps.popleft()

    def _check_memory_locked(self) -> MemoryReading:
        reading = self._memory_probe()
        self._last_memory = reading
        if reading.fraction > self._config.memory_fraction:
            logger.warning(
                "Request rejected: memory pressure",
                extra={
                    "resident_mb": round(reading.resident_bytes / (1024 * 1024), 1),
                    "fraction": round(reading.fraction, 3),
                    "limit": self._config.memory_fraction,
                },
            )
            raise MemoryPressure(
                "System memory limit exceeded. Close other apps and try again."
            )
        return reading
