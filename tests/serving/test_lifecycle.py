# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Tests for the model lifecycle manager and model handles."""

import pytest

from fakes import FakeLoader, ScriptedBackend
from hiyo.serving.exceptions import (
    EngineBusyError,
    LoadError,
    ModelNotLoadedError,
    ValidationError,
)
from hiyo.serving.lifecycle.core import (
    Failed,
    Idle,
    Loaded,
    Loading,
    ModelHandle,
    ModelLifecycleManager,
)


@pytest.fixture()
def manager(fake_loader: FakeLoader):  # type: ignore[no-untyped-def]
    mgr = ModelLifecycleManager(fake_loader)
    yield mgr
    mgr.close()


class TestModelHandle:
    def test_lease_is_exclusive(self) -> None:
        handle = ModelHandle("test/one", ScriptedBackend())
        handle.acquire()
        with pytest.raises(EngineBusyError):
            handle.acquire()
        handle.release()
        handle.acquire()

    def test_closed_handle_refuses_leases(self) -> None:
        backend = ScriptedBackend()
        handle = ModelHandle("test/one", backend)
        handle.close()

        assert backend.closed
        with pytest.raises(ModelNotLoadedError):
            handle.acquire()

    def test_close_waits_for_lease(self) -> None:
        backend = ScriptedBackend()
        handle = ModelHandle("test/one", backend)

        with handle.lease() as leased:
            assert leased is backend
            handle.close()
            assert handle.is_closed
            assert not backend.closed

        assert backend.closed

    def test_double_close_releases_once(self) -> None:
        calls = []

        class _CountingBackend(ScriptedBackend):
            def close(self) -> None:
                calls.append(1)

        handle = ModelHandle("test/one", _CountingBackend())
        handle.close()
        handle.close()
        assert calls == [1]


class TestLoading:
    def test_load_makes_model_current(self, manager: ModelLifecycleManager) -> None:
        handle = manager.load("test/one")

        assert handle is not None
        assert handle.model_id == "test/one"
        assert manager.current_state() == Loaded(model_id="test/one")
        assert manager.current_handle() is handle
        assert manager.current_model == "test/one"
        assert manager.is_available

    def test_progress_is_reported(self, manager: ModelLifecycleManager) -> None:
        seen: list[float] = []
        manager.load("test/one", seen.append)
        assert seen == [0.0, 0.5, 1.0]

    def test_progress_never_goes_backwards(self) -> None:
        seen: list[float] = []

        def _loader(model_id, progress, cancel_event):  # type: ignore[no-untyped-def]
            progress(0.7)
            progress(0.3)
            progress(1.5)
            return ScriptedBackend()

        mgr = ModelLifecycleManager(_loader)
        try:
            mgr.load("test/one", seen.append)
        finally:
            mgr.close()
        assert seen == [0.7, 1.0]

    def test_state_is_loading_while_in_flight(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        gate = fake_loader.block("test/one")
        future = manager.submit_load("test/one")
        assert fake_loader.started["test/one"].wait(timeout=5)

        assert manager.current_state() == Loading(model_id="test/one", progress=0.0)
        assert manager.loading_progress == 0.0
        assert not manager.is_available
        assert manager.is_loading

        gate.set()
        assert future.result(timeout=5) is not None
        assert manager.loading_progress is None
        assert not manager.is_loading

    def test_model_in_flight_is_not_current(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        manager.load("test/one")
        gate = fake_loader.block("test/two")
        future = manager.submit_load("test/two")
        assert fake_loader.started["test/two"].wait(timeout=5)

        assert manager.current_model is None
        assert not manager.is_available
        assert manager.current_handle() is not None

        gate.set()
        assert future.result(timeout=5) is not None
        assert manager.current_model == "test/two"

    def test_new_model_replaces_and_frees_the_old(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        first = manager.load("test/one")
        manager.load("test/two")

        assert first is not None and first.is_closed
        assert fake_loader.built[0][1].closed
        assert manager.current_model == "test/two"

    def test_state_changes_are_logged(self, manager: ModelLifecycleManager, capture_log) -> None:
        records = capture_log("hiyo.serving.lifecycle.core")
        manager.load("test/one")

        changes = [
            (getattr(r, "from"), r.to) for r in records if r.getMessage() == "Model state changed"
        ]
        assert changes == [("Idle", "Loading"), ("Loading", "Loaded")]


class TestSupersededLoads:
    def test_later_load_wins(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        gate = fake_loader.block("test/one")
        first = manager.submit_load("test/one")
        assert fake_loader.started["test/one"].wait(timeout=5)

        second = manager.submit_load("test/two")
        gate.set()

        assert first.result(timeout=5) is None
        handle = second.result(timeout=5)
        assert handle is not None and handle.model_id == "test/two"
        assert manager.current_state() == Loaded(model_id="test/two")
        # The cancelled load stopped before building anything
        assert [model_id for model_id, _ in fake_loader.built] == ["test/two"]

    def test_finished_but_superseded_load_is_discarded(self) -> None:
        loader = FakeLoader(report_progress=False)
        mgr = ModelLifecycleManager(loader)
        try:
            gate = loader.block("test/one")
            first = mgr.submit_load("test/one")
            assert loader.started["test/one"].wait(timeout=5)

            second = mgr.submit_load("test/two")
            gate.set()

            assert first.result(timeout=5) is None
            assert second.result(timeout=5) is not None
            discarded = dict(loader.built)["test/one"]
            assert discarded.closed
            assert mgr.current_model == "test/two"
        finally:
            mgr.close()

    def test_superseded_failure_is_ignored(self) -> None:
        loader = FakeLoader(report_progress=False)
        loader.failures["test/one"] = RuntimeError("disk on fire")
        mgr = ModelLifecycleManager(loader)
        try:
            gate = loader.block("test/one")
            first = mgr.submit_load("test/one")
            assert loader.started["test/one"].wait(timeout=5)

            second = mgr.submit_load("test/two")
            gate.set()

            assert first.result(timeout=5) is None
            assert second.result(timeout=5) is not None
            assert mgr.current_state() == Loaded(model_id="test/two")
        finally:
            mgr.close()


class TestFailures:
    def test_failure_keeps_previous_model(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        previous = manager.load("test/one")
        fake_loader.failures["test/broken"] = LoadError("corrupt weights")

        with pytest.raises(LoadError, match="corrupt weights"):
            manager.load("test/broken")

        state = manager.current_state()
        assert isinstance(state, Failed)
        assert isinstance(state.error, LoadError)
        assert manager.current_handle() is previous
        with previous.lease() as backend:
            assert not backend.closed

    def test_availability_follows_the_failed_state(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        manager.load("test/one")
        fake_loader.failures["test/broken"] = LoadError("corrupt weights")

        with pytest.raises(LoadError):
            manager.load("test/broken")

        assert manager.current_model is None
        assert not manager.is_available
        assert manager.current_handle() is not None

    def test_library_errors_become_load_errors(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        fake_loader.failures["test/broken"] = OSError("no such file")

        with pytest.raises(LoadError) as exc_info:
            manager.load("test/broken")
        assert isinstance(exc_info.value.__cause__, OSError)

    def test_can_load_again_after_failure(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        fake_loader.failures["test/broken"] = LoadError("bad")
        with pytest.raises(LoadError):
            manager.load("test/broken")

        manager.load("test/one")
        assert manager.current_state() == Loaded(model_id="test/one")

    @pytest.mark.parametrize("model_id", ["../etc/passwd", "no-slash", "a/b;rm", ""])
    def test_invalid_identifier_changes_nothing(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader, model_id: str
    ) -> None:
        with pytest.raises(ValidationError):
            manager.load(model_id)

        assert manager.current_state() == Idle()
        assert fake_loader.calls == []


class TestUnload:
    def test_unload_frees_the_model(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        handle = manager.load("test/one")
        manager.unload()

        assert manager.current_state() == Idle()
        assert manager.current_handle() is None
        assert handle is not None and handle.is_closed
        assert fake_loader.built[0][1].closed

    def test_unload_when_idle_is_harmless(self, manager: ModelLifecycleManager) -> None:
        manager.unload()
        assert manager.current_state() == Idle()

    def test_unload_cancels_load_in_flight(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        gate = fake_loader.block("test/one")
        future = manager.submit_load("test/one")
        assert fake_loader.started["test/one"].wait(timeout=5)

        manager.unload()
        assert manager.current_state() == Idle()
        gate.set()

        assert future.result(timeout=5) is None
        assert manager.current_state() == Idle()
        assert fake_loader.built == []

    def test_unload_waits_for_running_generation(
        self, manager: ModelLifecycleManager, fake_loader: FakeLoader
    ) -> None:
        handle = manager.load("test/one")
        assert handle is not None
        backend = handle.acquire()

        manager.unload()
        assert not backend.closed

        handle.release()
        assert backend.closed

    def test_closed_manager_refuses_loads(self, fake_loader: FakeLoader) -> None:
        mgr = ModelLifecycleManager(fake_loader)
        mgr.close()
        with pytest.raises(RuntimeError):
            mgr.submit_load("test/one")


class TestStateMachine:
    def test_illegal_transition_is_a_programming_error(
        self, manager: ModelLifecycleManager
    ) -> None:
        with pytest.raises(AssertionError):
            manager._transition(Loaded(model_id="test/one"))
