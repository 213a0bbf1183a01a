# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Shared fixtures for serving tests.

The fakes themselves live in fakes.py so test modules can build their own
variants; this file only wires up the common instances.
"""

import logging

import pytest
import torch

from fakes import FakeClock, FakeLoader, FakeMemory, ListHandler, RecordingGovernor, ScriptedBackend
from hiyo.config.schema import GovernorConfig


@pytest.fixture()
def capture_log():  # type: ignore[no-untyped-def]
    """
    Attach a collecting handler to a named logger.

    Hiyo loggers don't propagate, so caplog never sees them.
    """
    attached: list[tuple[logging.Logger, ListHandler]] = []

    def _attach(name: str) -> list[logging.LogRecord]:
        handler = ListHandler()
        logger = logging.getLogger(name)
        logger.addHandler(handler)
        attached.append((logger, handler))
        return handler.records

    yield _attach
    for logger, handler in attached:
        logger.removeHandler(handler)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory() -> FakeMemory:
    return FakeMemory()


@pytest.fixture()
def governor(clock: FakeClock, memory: FakeMemory) -> RecordingGovernor:
    return RecordingGovernor(GovernorConfig(), clock=clock, memory_probe=memory)


@pytest.fixture()
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture()
def fake_loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture()
def tiny_model_dir(tmp_path):  # type: ignore[no-untyped-def]
    """
    A real, randomly initialised Llama checkpoint small enough for CPU tests.

    Written with save_pretrained next to a word-level tokenizer.json, the
    same layout a downloaded model has.
    """
    from tokenizers import Tokenizer
    from tokenizers.models import WordLevel
    from tokenizers.pre_tokenizers import Whitespace
    from transformers import LlamaConfig, LlamaForCausalLM

    model_dir = tmp_path / "models" / "tiny_llama"
    model_dir.mkdir(parents=True)

    torch.manual_seed(0)
    config = LlamaConfig(
        vocab_size=64,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=1,
        num_attention_heads=2,
        num_key_value_heads=2,
        max_position_embeddings=128,
        bos_token_id=1,
        eos_token_id=2,
    )
    LlamaForCausalLM(config).save_pretrained(str(model_dir))

    vocab = {"<pad>": 0, "<s>": 1, "</s>": 2, "<unk>": 3}
    for i, word in enumerate(["hello", "world", "User", "Assistant", "System", ":"], start=4):
        vocab[word] = i
    tokenizer = Tokenizer(WordLevel(vocab=vocab, unk_token="<unk>"))
    tokenizer.pre_tokenizer = Whitespace()
    tokenizer.save(str(model_dir / "tokenizer.json"))

    return model_dir
