# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Chat engine: the one object callers talk to.

This module ties the pieces together: the lifecycle manager that owns the
model, the governor that decides whether a request may run, and the
streaming pipeline that runs the decode loop on its own worker. Calling
`engine.generate(messages)` does the rest: handle lookup, admission,
prompt formatting, tokenization, the decode, and budget release.

The engine doesn't know or care about terminals, windows, or HTTP. It
takes conversations and returns streams of text; the CLI does the I/O.
"""

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor

from hiyo.config.schema import RuntimeConfig
from hiyo.logging.logger import get_logger
from hiyo.serving.api.schema import GenerationRequest, MessageLike, coerce_messages
from hiyo.serving.backend.core import InferenceBackend
from hiyo.serving.decode.core import DecodeLoop
from hiyo.serving.exceptions import EngineBusyError, ModelNotLoadedError
from hiyo.serving.generation.core import GenerationParameters
from hiyo.serving.governor.core import ResourceGovernor
from hiyo.serving.lifecycle.core import (
    Loader,
    LoadState,
    ModelHandle,
    ModelLifecycleManager,
)
from hiyo.serving.loader.core import ProgressCallback, load_backend
from hiyo.serving.metrics.core import ServingMetrics
from hiyo.serving.streaming.core import GenerationStream

logger: logging.Logger = get_logger(__name__)


class ChatEngine:
    """
    High-level generation API.

    One engine per process is the intended use. It runs at most one
    generation at a time: decode happens on a single dedicated worker, and
    a second `generate()` while one is still running raises
    EngineBusyError instead of queueing.

    `loader` and `governor` are injectable so the whole engine can be
    driven in tests without real weights or a real clock.
    """

    def __init__(
        self,
        runtime_cfg: RuntimeConfig | None = None,
        loader: Loader | None = None,
        governor: ResourceGovernor | None = None,
    ) -> None:
        self._runtime_cfg = runtime_cfg or RuntimeConfig(config_version="1.0.0")
        self._governor = governor or ResourceGovernor(self._runtime_cfg.governor)
        self._lifecycle = ModelLifecycleManager(loader or self._load_from_disk)
        self._metrics = ServingMetrics()
        self._decode_executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="hiyo-decode"
        )
        self._lock = threading.Lock()
        self._active_stream: GenerationStream | None = None

    @property
    def metrics(self) -> ServingMetrics:
        return self._metrics

    @property
    def governor(self) -> ResourceGovernor:
        return self._governor

    @property
    def lifecycle(self) -> ModelLifecycleManager:
        return self._lifecycle

    def load_model(
        self,
        model_id: str,
        progress_callback: ProgressCallback | None = None,
    ) -> ModelHandle | None:
        """
        Load a model and make it current. Blocks until done.

        Returns None if another load or an unload superseded this one.

        Raises:
            ValidationError: Malformed identifier.
            LoadError: The load failed; the previous model is still current.
        """
        return self._lifecycle.load(model_id, progress_callback)

    def submit_load(
        self,
        model_id: str,
        progress_callback: ProgressCallback | None = None,
    ) -> "Future[ModelHandle | None]":
        """Non-blocking load_model(). Watch current_state() for progress."""
        return self._lifecycle.submit_load(model_id, progress_callback)

    def unload_model(self) -> None:
        """Stop any running generation and free the model."""
        self._cancel_active()
        self._lifecycle.unload()

    def current_state(self) -> LoadState:
        return self._lifecycle.current_state()

    def default_parameters(self) -> GenerationParameters:
        defaults = self._runtime_cfg.generation
        return GenerationParameters(
            temperature=defaults.temperature,
            top_p=defaults.top_p,
            max_tokens=defaults.max_tokens,
        )

    def generate(
        self,
        messages: Iterable[MessageLike],
        params: GenerationParameters | None = None,
    ) -> GenerationStream:
        """
        Start generating a reply to `messages`.

        Messages are ChatMessage objects or {"role", "content"} dicts. The
        returned stream yields text as it is produced; cancel it at any
        time with `stream.cancel()`.

        A previous stream that is still running but was never read is
        abandoned: it is cancelled and this generation takes its place.
        Only a stream somebody is reading counts as busy.

        Raises:
            ValidationError: Bad message or parameters.
            ModelNotLoadedError: Nothing is loaded.
            EngineBusyError: A generation is already running and being read.
            ResourceError: The governor refused the request.
        """
        request = GenerationRequest(
            messages=coerce_messages(messages),
            params=params or self.default_parameters(),
        )

        handle = self._lifecycle.current_handle()
        if handle is None:
            raise ModelNotLoadedError("No model loaded. Load a model first.")

        with self._lock:
            active = self._active_stream
            if active is not None and not active.is_finished:
                if active.is_consumed:
                    raise EngineBusyError("A generation is already running")
                logger.info("Abandoning unread generation")
                active.cancel()
                active.wait()
            stream = GenerationStream(
                handle=handle,
                governor=self._governor,
                request=request,
                decode_loop_factory=self._make_decode_loop,
                executor=self._decode_executor,
                queue_size=self._runtime_cfg.stream_queue_size,
                metrics=self._metrics,
            )
            self._active_stream = stream
        return stream

    def close(self) -> None:
        """Cancel, unload, and stop the workers."""
        self._cancel_active()
        self._lifecycle.close()
        self._decode_executor.shutdown(wait=True)
        logger.info("Engine closed", extra=self._metrics.summary())

    def __enter__(self) -> "ChatEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _make_decode_loop(self, backend: InferenceBackend) -> DecodeLoop:
        generation = self._runtime_cfg.generation
        return DecodeLoop(
            backend,
            self._governor,
            max_context_tokens=generation.max_context_tokens,
            max_generation_tokens=generation.max_generation_tokens,
        )

    def _cancel_active(self) -> None:
        with self._lock:
            stream = self._active_stream
            self._active_stream = None
        if stream is not None and not stream.is_finished:
            stream.cancel()
            stream.wait()

    def _load_from_disk(self, model_id, progress, cancel_event) -> InferenceBackend:
        return load_backend(model_id, self._runtime_cfg, progress, cancel_event)
