# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Streaming pipeline: a decode loop wrapped in a cancellable stream.

Nobody wants to stare at a blank screen for twenty seconds while a reply
is generated, so text goes out token by token as soon as it is decoded.

Two threads are involved. The decode worker runs forward passes and
sampling and pushes each chunk into a bounded queue. The consumer (CLI,
UI, whoever iterates the stream) pulls from that queue on its own thread.
A slow consumer only slows the worker through the queue filling up; the
worker keeps checking for cancellation while it waits, so a consumer that
walks away cannot wedge it.

Everything a generation holds is given back exactly once when it ends:
the prompt and generated token budget, and the lease on the model handle.
"""

import logging
import queue
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Executor, Future

from hiyo.logging.logger import get_logger
from hiyo.serving.api.schema import (
    ChatMessage,
    DecodedChunk,
    GenerationRequest,
    GenerationSummary,
)
from hiyo.serving.backend.core import InferenceBackend
from hiyo.serving.decode.core import DecodeLoop, DecodeState, truncate_prompt
from hiyo.serving.exceptions import GenerationError, HiyoError
from hiyo.serving.governor.core import ResourceGovernor
from hiyo.serving.lifecycle.core import ModelHandle
from hiyo.serving.metrics.core import RequestMetrics, ServingMetrics
from hiyo.serving.validation.core import sanitize_output

logger: logging.Logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 64
_PUT_POLL_SECONDS = 0.05

_END = object()

_ROLE_PREFIXES = {
    "system": "System",
    "user": "User",
    "assistant": "Assistant",
}


def format_prompt(messages: Sequence[ChatMessage]) -> str:
    """
    Render a conversation as the plain-text prompt the model continues.

    Each message becomes `Role: content` on its own line, and the prompt
    ends with an open `Assistant:` turn for the model to fill in.
    """
    lines = [f"{_ROLE_PREFIXES[m.role]}: {m.content}" for m in messages]
    if not lines:
        return "Assistant:"
    return "\n".join(lines) + "\nAssistant:"


DecodeLoopFactory = Callable[[InferenceBackend], DecodeLoop]


class GenerationStream:
    """
    One generation, as a single-consumer, non-restartable stream.

    Construction does all the checks up front, in this order: take the
    model lease, get admitted by the governor, encode and truncate the
    prompt, reserve budget for the prompt. Any failure there raises
    immediately and gives back whatever had been taken. Only then is the
    decode handed to the worker.

    Iterate the stream for text, or `chunks()` for the full DecodedChunk
    objects. Cancelling finishes the stream quietly; an error in the
    decode is raised to whoever is iterating.
    """

    def __init__(
        self,
        handle: ModelHandle,
        governor: ResourceGovernor,
        request: GenerationRequest,
        decode_loop_factory: DecodeLoopFactory,
        executor: Executor,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        metrics: ServingMetrics | None = None,
    ) -> None:
        self._handle = handle
        self._governor = governor
        self._request = request
        self._metrics = metrics
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._settle_lock = threading.Lock()
        self._settled = False
        self._consumed = False
        self._error: Exception | None = None
        self._summary: GenerationSummary | None = None

        backend = handle.acquire()
        try:
            governor.admit()
            loop = decode_loop_factory(backend)
            prompt = truncate_prompt(self._encode(backend), loop.context_limit)
            if not prompt:
                raise GenerationError("Prompt encoded to zero tokens")
            governor.allocate(len(prompt))
        except BaseException:
            handle.release()
            raise
        self._prompt_tokens = len(prompt)

        try:
            self._future: Future = executor.submit(self._run, loop, prompt)
        except BaseException:
            self._settle(tokens_generated=0)
            raise

        logger.info(
            "Generation started",
            extra={
                "model_id": handle.model_id,
                "prompt_tokens": self._prompt_tokens,
                "max_tokens": request.params.max_tokens,
            },
        )

    @property
    def prompt_tokens(self) -> int:
        return self._prompt_tokens

    @property
    def is_finished(self) -> bool:
        return self._done.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_consumed(self) -> bool:
        """True once somebody has started reading `chunks()`."""
        return self._consumed

    def cancel(self) -> None:
        """
        Ask the decode to stop.

        Cooperative: the forward pass in flight finishes, then the loop
        sees the request at the top of its next step.
        """
        if not self._cancel_event.is_set() and not self._done.is_set():
            logger.info("Generation cancel requested")
        self._cancel_event.set()

    def chunks(self) -> Iterator[DecodedChunk]:
        """
        Yield DecodedChunks in generation order until the decode ends.

        Leaving the iteration early cancels the generation.

        Raises:
            RuntimeError: The stream was already consumed.
            HiyoError: Whatever ended the decode, unless it was a cancel.
        """
        if self._consumed:
            raise RuntimeError("A generation stream can only be consumed once")
        self._consumed = True

        reached_end = False
        try:
            while True:
                item = self._queue.get()
                if item is _END:
                    reached_end = True
                    break
                yield item
        finally:
            if not reached_end:
                self.cancel()

        self._future.result()
        if self._error is not None:
            raise self._error

    def __iter__(self) -> Iterator[str]:
        for chunk in self.chunks():
            if chunk.text:
                yield chunk.text

    def collect(self) -> str:
        """Consume the whole stream and return the reply, cleaned for display."""
        return sanitize_output("".join(self))

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the decode worker is done. Returns False on timeout."""
        return self._done.wait(timeout)

    def result(self, timeout: float | None = None) -> GenerationSummary:
        """
        Summary of the finished generation.

        Raises:
            TimeoutError: Still running after `timeout` seconds.
            HiyoError: The decode failed.
        """
        if not self._done.wait(timeout):
            raise TimeoutError("Generation is still running")
        if self._error is not None:
            raise self._error
        assert self._summary is not None
        return self._summary

    def __enter__(self) -> "GenerationStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        self._done.wait()

    def _encode(self, backend: InferenceBackend) -> list[int]:
        prompt = format_prompt(self._request.messages)
        try:
            return list(backend.encode(prompt))
        except HiyoError:
            raise
        except Exception as err:
            raise GenerationError(f"Tokenization failed: {err}") from err

    def _run(self, loop: DecodeLoop, prompt: list[int]) -> None:
        chunks = loop.run(
            prompt,
            self._request.params,
            cancel_event=self._cancel_event,
            on_finish=self._on_finish,
        )
        try:
            for chunk in chunks:
                if not self._put(chunk):
                    break
        except Exception as err:
            self._error = err
            logger.error("Generation failed", extra={"error": str(err)})
        finally:
            chunks.close()
            # A decode that never got to run still owes the prompt budget back
            self._settle(tokens_generated=0)
            self._put_end()
            self._done.set()

    def _on_finish(self, state: DecodeState) -> None:
        self._settle(tokens_generated=state.tokens_generated)

        total_s = state.total_ms / 1000.0
        tps = state.tokens_generated / total_s if total_s > 0 else 0.0
        finish_reason = state.finish_reason or "cancelled"
        self._summary = GenerationSummary(
            prompt_tokens=state.prompt_tokens,
            generated_tokens=state.tokens_generated,
            finish_reason=finish_reason,
            total_time_ms=round(state.total_ms, 2),
            first_token_ms=round(state.first_token_ms, 2),
            tokens_per_second=round(tps, 2),
        )
        if self._metrics is not None:
            self._metrics.record(
                RequestMetrics(
                    prompt_tokens=state.prompt_tokens,
                    generated_tokens=state.tokens_generated,
                    total_time_ms=state.total_ms,
                    first_token_ms=state.first_token_ms,
                    tokens_per_second=tps,
                    finish_reason=finish_reason,
                    resident_memory_mb=ServingMetrics.get_resident_memory_mb(),
                )
            )

    def _settle(self, tokens_generated: int) -> None:
        """Return the budget and the lease. Only the first call does anything."""
        with self._settle_lock:
            if self._settled:
                return
            self._settled = True
        self._governor.release(self._prompt_tokens + tokens_generated)
        self._handle.release()

    def _put(self, item: DecodedChunk) -> bool:
        while not self._cancel_event.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def _put_end(self) -> None:
        while True:
            try:
                self._queue.put(_END, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                if self._cancel_event.is_set():
                    self._drain()

    def _drain(self) -> None:
        # Cancelled: nobody wants the chunks still waiting
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
