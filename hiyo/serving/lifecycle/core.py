# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Model lifecycle: which model is loaded, and who may use it.

There is at most one current model per manager. It lives behind a
ModelHandle, which owns the backend exclusively: nobody else keeps a
reference to the weights, so closing the handle really frees them.

Loading is the awkward part. A load takes seconds to minutes, the user can
change their mind halfway through, and the old model should keep working
until the new one is actually ready. So:

  - Loads run one at a time on a dedicated worker thread.
  - Starting a new load cancels the one in flight. The cancelled load
    notices at its next progress report and stops; if it finishes anyway
    its result is thrown away. Either way it resolves to None, not an error.
  - A successful load swaps the new handle in atomically, then closes the
    old one. A failed load leaves the old handle current and untouched.

State machine:

    Idle ──> Loading ──> Loaded
               │ ^          │
               v │          v
             Failed ──> (Loading again)

  plus Loading -> Loading (superseded) and Loaded/Failed/Loading -> Idle
  (unload). There is no terminal state.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass

from hiyo.logging.logger import get_logger, sanitize_for_log
from hiyo.serving.backend.core import InferenceBackend
from hiyo.serving.exceptions import (
    EngineBusyError,
    HiyoError,
    LoadCancelled,
    LoadError,
    ModelNotLoadedError,
)
from hiyo.serving.loader.core import ProgressCallback
from hiyo.serving.validation.core import validate_model_identifier

logger: logging.Logger = get_logger(__name__)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Loading:
    model_id: str
    progress: float = 0.0


@dataclass(frozen=True)
class Loaded:
    model_id: str


@dataclass(frozen=True)
class Failed:
    error: Exception


LoadState = Idle | Loading | Loaded | Failed

_ALLOWED_TRANSITIONS: dict[type, tuple[type, ...]] = {
    Idle: (Loading,),
    Loading: (Loading, Loaded, Failed, Idle),
    Loaded: (Loading, Idle),
    Failed: (Loading, Idle),
}

Loader = Callable[[str, ProgressCallback, threading.Event], InferenceBackend]


class ModelHandle:
    """
    Exclusive owner of one loaded backend.

    Generation borrows the backend through a lease. Only one lease can be
    out at a time, which is what keeps two decode loops off the same
    model. Closing a handle while it is leased does not pull the weights
    out from under the running generation: the release waits until the
    lease ends.
    """

    def __init__(self, model_id: str, backend: InferenceBackend) -> None:
        self._model_id = model_id
        self._backend = backend
        self._lock = threading.Lock()
        self._leased = False
        self._close_requested = False
        self._closed = False

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return self._closed or self._close_requested

    @property
    def is_leased(self) -> bool:
        with self._lock:
            return self._leased

    def acquire(self) -> InferenceBackend:
        """
        Take the lease and get the backend.

        Raises:
            ModelNotLoadedError: The handle has been closed.
            EngineBusyError: Another generation holds the lease.
        """
        with self._lock:
            if self._closed or self._close_requested:
                raise ModelNotLoadedError(f"Model {self._model_id} has been unloaded")
            if self._leased:
                raise EngineBusyError("A generation is already running on this model")
            self._leased = True
            return self._backend

    def release(self) -> None:
        """End the lease, and finish a close that was waiting on it."""
        with self._lock:
            if not self._leased:
                return
            self._leased = False
            release_now = self._close_requested and not self._closed
            if release_now:
                self._closed = True
        if release_now:
            self._release_backend()

    @contextmanager
    def lease(self) -> Iterator[InferenceBackend]:
        backend = self.acquire()
        try:
            yield backend
        finally:
            self.release()

    def close(self) -> None:
        """Free the weights now, or as soon as the current lease ends."""
        with self._lock:
            if self._closed or self._close_requested:
                return
            self._close_requested = True
            if self._leased:
                logger.info(
                    "Model release deferred until generation ends",
                    extra={"model_id": self._model_id},
                )
                return
            self._closed = True
        self._release_backend()

    def _release_backend(self) -> None:
        self._backend.close()
        logger.info("Model released", extra={"model_id": self._model_id})


class ModelLifecycleManager:
    """
    Loads and unloads models, one at a time, behind a state machine.

    The loader does the actual work and is injected: production passes
    `load_backend` bound to the runtime config, tests pass something that
    returns a fake backend. It is called on the load worker thread as
    `loader(model_id, progress, cancel_event)` and is expected to give up
    with LoadCancelled when `progress` raises it.
    """

    def __init__(self, loader: Loader) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._state: LoadState = Idle()
        self._handle: ModelHandle | None = None
        self._attempt = 0
        self._cancel_event: threading.Event | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hiyo-load")
        self._closed = False

    def current_state(self) -> LoadState:
        with self._lock:
            return self._state

    def current_handle(self) -> ModelHandle | None:
        with self._lock:
            return self._handle

    @property
    def current_model(self) -> str | None:
        """
        The model the state says is loaded, or None while Idle, Loading
        or Failed.

        A previous handle can still be serving during a load or after a
        failed one; use `current_handle()` to reach it.
        """
        state = self.current_state()
        return state.model_id if isinstance(state, Loaded) else None

    @property
    def is_available(self) -> bool:
        return isinstance(self.current_state(), Loaded)

    @property
    def is_loading(self) -> bool:
        return isinstance(self.current_state(), Loading)

    @property
    def loading_progress(self) -> float | None:
        state = self.current_state()
        return state.progress if isinstance(state, Loading) else None

    def submit_load(
        self,
        model_id: str,
        progress_callback: ProgressCallback | None = None,
    ) -> "Future[ModelHandle | None]":
        """
        Start loading `model_id` in the background.

        The identifier is checked before anything else. A bad one raises
        right here and the state does not move.

        The future resolves to the new handle, to None if a later load or
        an unload superseded this one, or raises the load's error.

        Raises:
            ValidationError: Malformed identifier.
        """
        model_id = validate_model_identifier(model_id)

        with self._lock:
            if self._closed:
                raise RuntimeError("Model lifecycle manager is closed")
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._attempt += 1
            attempt = self._attempt
            cancel_event = threading.Event()
            self._cancel_event = cancel_event
            self._transition(Loading(model_id=model_id, progress=0.0))

        return self._executor.submit(
            self._run_load, attempt, model_id, cancel_event, progress_callback
        )

    def load(
        self,
        model_id: str,
        progress_callback: ProgressCallback | None = None,
    ) -> ModelHandle | None:
        """
        Load `model_id` and wait for it.

        Returns the new handle, or None when superseded.

        Raises:
            ValidationError: Malformed identifier.
            LoadError: The load failed. The previous model stays current.
        """
        return self.submit_load(model_id, progress_callback).result()

    def unload(self) -> None:
        """Cancel any load in flight and free the current model."""
        with self._lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
                self._cancel_event = None
            self._attempt += 1
            handle = self._handle
            self._handle = None
            if not isinstance(self._state, Idle):
                self._transition(Idle())

        if handle is not None:
            handle.close()
            logger.info("Model unloaded", extra={"model_id": handle.model_id})

    def close(self) -> None:
        """Unload and stop the load worker. The manager is unusable afterwards."""
        with self._lock:
            self._closed = True
        self.unload()
        self._executor.shutdown(wait=True, cancel_futures=True)

    def _run_load(
        self,
        attempt: int,
        model_id: str,
        cancel_event: threading.Event,
        progress_callback: ProgressCallback | None,
    ) -> ModelHandle | None:
        if cancel_event.is_set():
            logger.info("Load superseded before start", extra={"model_id": model_id})
            return None

        last_progress = 0.0

        def _progress(fraction: float) -> None:
            nonlocal last_progress
            if cancel_event.is_set():
                raise LoadCancelled(f"Load of {model_id} was superseded")
            fraction = min(max(fraction, 0.0), 1.0)
            if fraction < last_progress:
                return
            last_progress = fraction
            with self._lock:
                if attempt == self._attempt:
                    self._transition(Loading(model_id=model_id, progress=fraction))
            if progress_callback is not None:
                progress_callback(fraction)

        logger.info("Model load started", extra={"model_id": model_id})
        try:
            backend = self._loader(model_id, _progress, cancel_event)
        except LoadCancelled:
            logger.info("Model load cancelled", extra={"model_id": model_id})
            return None
        except Exception as err:
            error = err if isinstance(err, HiyoError) else LoadError(str(err))
            with self._lock:
                if attempt != self._attempt:
                    logger.info(
                        "Superseded load failed, ignoring",
                        extra={"model_id": model_id, "error": sanitize_for_log(str(err))},
                    )
                    return None
                self._cancel_event = None
                self._transition(Failed(error=error))
                kept = self._handle
            logger.error(
                "Model load failed",
                extra={
                    "model_id": model_id,
                    "error": sanitize_for_log(str(err)),
                    "previous_model": kept.model_id if kept is not None else None,
                },
            )
            if error is err:
                raise
            raise error from err

        handle = ModelHandle(model_id, backend)
        with self._lock:
            superseded = attempt != self._attempt
            previous = None
            if not superseded:
                previous = self._handle
                self._handle = handle
                self._cancel_event = None
                self._transition(Loaded(model_id=model_id))

        if superseded:
            logger.info("Load superseded after finishing, discarding", extra={"model_id": model_id})
            handle.close()
            return None

        if previous is not None:
            previous.close()
        logger.info("Model loaded", extra={"model_id": model_id})
        return handle

    def _transition(self, new_state: LoadState) -> None:
        """Move to `new_state`. Caller holds the lock."""
        allowed = _ALLOWED_TRANSITIONS[type(self._state)]
        assert isinstance(new_state, allowed), (
            f"Illegal model state transition {type(self._state).__name__} "
            f"-> {type(new_state).__name__}"
        )
        if type(new_state) is not type(self._state):
            logger.info(
                "Model state changed",
                extra={"from": type(self._state).__name__, "to": type(new_state).__name__},
            )
        self._state = new_state
