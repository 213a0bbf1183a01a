# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Tests for the decode loop: stop conditions, truncation, budget, cancellation."""

import threading

import pytest

from fakes import EOS_ID, FILLER_ID, ScriptedBackend
from hiyo.config.schema import GovernorConfig
from hiyo.serving.decode.core import (
    FINISH_CANCELLED,
    FINISH_EOS,
    FINISH_ERROR,
    FINISH_LENGTH,
    DecodeLoop,
    DecodeState,
    truncate_prompt,
)
from hiyo.serving.exceptions import ContextTooLarge, GenerationError
from hiyo.serving.generation.core import GenerationParameters
from hiyo.serving.governor.core import ResourceGovernor

GREEDY = dict(temperature=0.0, top_p=1.0)


class _Finished:
    """on_finish callback that keeps every state it is handed."""

    def __init__(self) -> None:
        self.states: list[DecodeState] = []

    def __call__(self, state: DecodeState) -> None:
        self.states.append(state)

    @property
    def state(self) -> DecodeState:
        assert len(self.states) == 1
        return self.states[0]


class TestTruncatePrompt:
    def test_short_prompt_is_untouched(self) -> None:
        assert truncate_prompt([1, 2, 3], 10) == [1, 2, 3]

    def test_keeps_most_recent_tokens(self) -> None:
        assert truncate_prompt(list(range(10)), 4) == [6, 7, 8, 9]

    def test_returns_a_copy(self) -> None:
        tokens = [1, 2, 3]
        assert truncate_prompt(tokens, 10) is not tokens


class TestStopConditions:
    def test_stops_at_max_tokens(self, backend: ScriptedBackend, governor: ResourceGovernor) -> None:
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        chunks = list(
            loop.run([1, 2, 3], GenerationParameters(max_tokens=5, **GREEDY), on_finish=finished)
        )

        assert len(chunks) == 5
        assert [c.token_id for c in chunks] == [FILLER_ID] * 5
        assert [c.position for c in chunks] == [0, 1, 2, 3, 4]
        assert finished.state.finish_reason == FINISH_LENGTH
        assert finished.state.tokens_generated == 5

    def test_eos_ends_generation_without_being_emitted(
        self, governor: ResourceGovernor
    ) -> None:
        backend = ScriptedBackend(transitions={4: 7, 7: EOS_ID})
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        chunks = list(
            loop.run([3, 4], GenerationParameters(max_tokens=50, **GREEDY), on_finish=finished)
        )

        assert [c.token_id for c in chunks] == [7]
        assert finished.state.finish_reason == FINISH_EOS
        assert finished.state.tokens_generated == 1
        # Only the one emitted token was charged
        assert governor.active_tokens == 1

    def test_stops_when_cache_is_full(self, governor: ResourceGovernor) -> None:
        backend = ScriptedBackend(max_context_length=6)
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        chunks = list(
            loop.run([1, 2, 3, 4], GenerationParameters(max_tokens=10, **GREEDY), on_finish=finished)
        )

        assert len(chunks) == 3
        assert finished.state.finish_reason == FINISH_LENGTH

    def test_generation_ceiling_caps_max_tokens(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        loop = DecodeLoop(backend, governor, max_generation_tokens=2)
        chunks = list(loop.run([1], GenerationParameters(max_tokens=10, **GREEDY)))
        assert len(chunks) == 2

    def test_single_token_prompt_skips_warmup(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        loop = DecodeLoop(backend, governor)
        list(loop.run([9], GenerationParameters(max_tokens=2, **GREEDY)))
        assert backend.forward_calls == [[9], [FILLER_ID]]


class TestPromptHandling:
    def test_long_prompt_keeps_most_recent_tokens(
        self, backend: ScriptedBackend, governor: ResourceGovernor, capture_log
    ) -> None:
        records = capture_log("hiyo.serving.decode.core")
        prompt = [(i % 30) + 1 for i in range(20_000)]
        finished = _Finished()
        loop = DecodeLoop(backend, governor)

        list(loop.run(prompt, GenerationParameters(max_tokens=1, **GREEDY), on_finish=finished))

        assert backend.forward_calls[0] == prompt[-16384:-1]
        assert backend.forward_calls[1] == [prompt[-1]]
        assert finished.state.prompt_tokens == 16384

        truncations = [r for r in records if r.getMessage() == "Prompt truncated"]
        assert len(truncations) == 1
        assert truncations[0].original_tokens == 20_000
        assert truncations[0].kept_tokens == 16384

    def test_backend_window_tightens_the_limit(self, governor: ResourceGovernor) -> None:
        backend = ScriptedBackend(max_context_length=100)
        loop = DecodeLoop(backend, governor)
        assert loop.context_limit == 100

    def test_empty_prompt_is_rejected(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        with pytest.raises(GenerationError):
            list(loop.run([], GenerationParameters(**GREEDY), on_finish=finished))

        assert finished.state.finish_reason == FINISH_ERROR
        assert backend.forward_calls == []


class TestBudget:
    def test_every_emitted_token_is_charged(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        loop = DecodeLoop(backend, governor)
        for i, _ in enumerate(loop.run([1, 2], GenerationParameters(max_tokens=4, **GREEDY)), 1):
            assert governor.active_tokens == i

    def test_cancel_releases_exactly_what_was_charged(
        self, backend: ScriptedBackend, governor
    ) -> None:
        prompt = [1, 2, 3, 4, 5, 6, 7]
        governor.allocate(len(prompt))
        cancel = threading.Event()

        finished = _Finished()

        def _on_finish(state: DecodeState) -> None:
            finished(state)
            governor.release(len(prompt) + state.tokens_generated)

        loop = DecodeLoop(backend, governor)
        received = 0
        for _ in loop.run(prompt, GenerationParameters(max_tokens=100, **GREEDY), cancel, _on_finish):
            received += 1
            if received == 3:
                cancel.set()

        assert finished.state.finish_reason == FINISH_CANCELLED
        assert finished.state.tokens_generated == 3
        assert governor.releases == [len(prompt) + 3]
        assert governor.active_tokens == 0

    def test_governor_refusal_ends_generation(self, backend: ScriptedBackend, clock, memory) -> None:
        governor = ResourceGovernor(
            GovernorConfig(max_concurrent_tokens=3), clock=clock, memory_probe=memory
        )
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        received = []
        with pytest.raises(ContextTooLarge):
            for chunk in loop.run([1, 2], GenerationParameters(max_tokens=10, **GREEDY), on_finish=finished):
                received.append(chunk)

        assert len(received) == 3
        assert finished.state.finish_reason == FINISH_ERROR
        assert finished.state.tokens_generated == 3


class TestCancellation:
    def test_cancel_before_start_produces_nothing(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        cancel = threading.Event()
        cancel.set()
        finished = _Finished()
        loop = DecodeLoop(backend, governor)

        assert list(loop.run([1, 2], GenerationParameters(**GREEDY), cancel, finished)) == []
        assert finished.state.finish_reason == FINISH_CANCELLED
        assert governor.active_tokens == 0

    def test_closing_the_iterator_counts_as_cancel(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        gen = loop.run([1, 2], GenerationParameters(max_tokens=10, **GREEDY), on_finish=finished)
        next(gen)
        next(gen)
        gen.close()

        assert finished.state.finish_reason == FINISH_CANCELLED
        assert finished.state.tokens_generated == 2

    def test_cache_is_reset_on_exit(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        list(loop.run([1, 2, 3], GenerationParameters(max_tokens=3, **GREEDY), on_finish=finished))
        assert finished.state.cache is not None
        assert finished.state.cache.current_length == 0


class TestFailures:
    def test_forward_failure_becomes_generation_error(self, governor: ResourceGovernor) -> None:
        backend = ScriptedBackend(fail_on_call=3)
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        received = []
        with pytest.raises(GenerationError, match="device lost"):
            for chunk in loop.run([1, 2], GenerationParameters(max_tokens=10, **GREEDY), on_finish=finished):
                received.append(chunk)

        assert len(received) == 1
        assert finished.state.finish_reason == FINISH_ERROR
        assert isinstance(finished.state.error, GenerationError)
        assert finished.state.tokens_generated == 1

    def test_bad_logits_are_not_wrapped(self, governor: ResourceGovernor) -> None:
        class _NanBackend(ScriptedBackend):
            def forward_incremental(self, token_ids, cache):  # type: ignore[no-untyped-def]
                logits = super().forward_incremental(token_ids, cache)
                return logits * float("nan")

        loop = DecodeLoop(_NanBackend(), governor)
        with pytest.raises(AssertionError):
            list(loop.run([1, 2], GenerationParameters(**GREEDY)))


class TestIncrementalText:
    def test_text_follows_generated_tokens(
        self, backend: ScriptedBackend, governor: ResourceGovernor
    ) -> None:
        finished = _Finished()
        loop = DecodeLoop(backend, governor)
        chunks = list(loop.run([1], GenerationParameters(max_tokens=4, **GREEDY), on_finish=finished))

        assert "".join(c.text for c in chunks) == "ffff"
        assert finished.state.text == "ffff"

    def test_incomplete_characters_are_held_back(self, governor: ResourceGovernor) -> None:
        class _SplitCharBackend(ScriptedBackend):
            # Every character takes two tokens; an odd count ends mid-character
            def decode(self, token_ids):  # type: ignore[no-untyped-def]
                text = "é" * (len(token_ids) // 2)
                if len(token_ids) % 2:
                    text += "\ufffd"
                return text

        loop = DecodeLoop(_SplitCharBackend(), governor)
        chunks = list(loop.run([1], GenerationParameters(max_tokens=4, **GREEDY)))

        assert [c.text for c in chunks] == ["", "é", "", "é"]
