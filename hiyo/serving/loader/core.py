# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Model loader: from `owner/name` to a ready InferenceBackend.

The loader resolves a model identifier to a directory under the configured
models directory, checks that weights and a tokenizer are really there,
verifies the weights against a checksum manifest when the model ships one,
and builds a TransformersBackend.

No network calls happen here. A model that is not on disk fails with
LoadError; fetching it is somebody else's job.

Progress is reported in stages through a callback, and the same callback
boundary is where a superseded load notices it has been cancelled:

    0.0  started
    0.1  directory resolved and weights found
    0.4  tokenizer loaded
    1.0  weights loaded, backend ready
"""

import json
import logging
import threading
from collections.abc import Callable
from pathlib import Path

import torch

from hiyo.config.schema import RuntimeConfig
from hiyo.logging.logger import get_logger
from hiyo.serving.backend.core import TransformersBackend, clear_device_cache
from hiyo.serving.exceptions import LoadCancelled, LoadError
from hiyo.serving.validation.core import validate_model_identifier
from hiyo.utils.hashing import compute_sha256

logger: logging.Logger = get_logger(__name__)

WEIGHT_EXTENSIONS = (".safetensors", ".bin", ".pt")
CHECKSUM_MANIFEST = "checksums.sha256"
TOKENIZER_FILE = "tokenizer.json"

ProgressCallback = Callable[[float], None]


def resolve_device(device_str: str) -> torch.device:
    """
    Turn the config's device string into an actual torch device.

    "auto" prefers CUDA, then Apple's MPS, then falls back to CPU.
    """
    if device_str == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        if torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")
    return torch.device(device_str)


def resolve_model_directory(model_id: str, models_directory: Path) -> Path:
    """
    Map `owner/name` to `<models_directory>/owner_name`.

    The identifier is validated again here so the loader is safe on its
    own, and the resolved path must stay inside the models directory even
    after symlinks are followed.

    Raises:
        ValidationError: Malformed identifier.
        LoadError: Directory missing or escaping the models directory.
    """
    validate_model_identifier(model_id)

    root = models_directory.resolve()
    model_dir = (root / model_id.replace("/", "_")).resolve()

    if not model_dir.is_relative_to(root):
        raise LoadError(f"Model directory escapes the models directory: {model_dir}")

    if not model_dir.is_dir():
        raise LoadError(f"Model directory not found: {model_dir}")

    return model_dir


def find_model_weights(model_dir: Path) -> list[Path]:
    """
    Locate the weight files of a model.

    Sharded checkpoints have several files, so all matches are returned,
    sorted for a stable verification order. Empty files are treated as
    missing: a zero-byte shard is a download that never finished.

    Raises:
        LoadError: No usable weight file found.
    """
    weights = sorted(
        path
        for path in model_dir.iterdir()
        if path.is_file() and path.suffix in WEIGHT_EXTENSIONS
    )
    if not weights:
        raise LoadError(
            f"No model weights ({', '.join(WEIGHT_EXTENSIONS)}) found in {model_dir}"
        )

    empty = [path.name for path in weights if path.stat().st_size == 0]
    if empty:
        raise LoadError(f"Empty weight files in {model_dir}: {', '.join(empty)}")

    return weights


def _read_checksum_manifest(model_dir: Path) -> dict[str, str] | None:
    """Parse `<sha256>  <filename>` lines, or return None without a manifest."""
    manifest = model_dir / CHECKSUM_MANIFEST
    if not manifest.is_file():
        return None

    expected: dict[str, str] = {}
    for line in manifest.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) == 2:
            expected[parts[1].lstrip("*")] = parts[0].lower()
    return expected


def verify_weights(model_dir: Path, weights: list[Path]) -> None:
    """
    Check every weight file listed in the manifest against its SHA256.

    No manifest means nothing to verify; we log and carry on. A manifest
    that disagrees with the bytes on disk means the files are corrupted or
    were swapped, and loading stops.

    Raises:
        LoadError: A listed weight file hashes to something else.
    """
    expected = _read_checksum_manifest(model_dir)
    if expected is None:
        logger.warning(
            "No checksum manifest for weights, skipping verification",
            extra={"model_dir": str(model_dir)},
        )
        return

    for path in weights:
        expected_hash = expected.get(path.name)
        if expected_hash is None:
            continue
        actual_hash = compute_sha256(path)
        if actual_hash != expected_hash:
            raise LoadError(
                f"Weights checksum mismatch for {path.name}. "
                f"Expected: {expected_hash[:16]}... "
                f"Got: {actual_hash[:16]}... "
                f"The model file may be corrupted."
            )
    logger.info("Weights checksum verified", extra={"files": len(weights)})


def _read_eos_token_ids(model_dir: Path, tokenizer: object) -> frozenset[int]:
    """
    Work out which token ids end a reply.

    generation_config.json is authoritative when present (it may list
    several ids); config.json comes next; as a last resort the tokenizer's
    vocabulary is searched for the usual end-of-sequence strings.
    """
    for name in ("generation_config.json", "config.json"):
        path = model_dir / name
        if not path.is_file():
            continue
        value = json.loads(path.read_text(encoding="utf-8")).get("eos_token_id")
        if isinstance(value, int):
            return frozenset({value})
        if isinstance(value, list) and value:
            return frozenset(int(v) for v in value)

    for token in ("</s>", "<|endoftext|>", "<|eot_id|>", "<eos>"):
        token_id = tokenizer.token_to_id(token)
        if token_id is not None:
            return frozenset({token_id})

    raise LoadError(f"Cannot determine the end-of-sequence token for {model_dir}")


def _read_max_context(model_dir: Path) -> int | None:
    path = model_dir / "config.json"
    if not path.is_file():
        return None
    config = json.loads(path.read_text(encoding="utf-8"))
    # Architectures disagree on the name of this field
    for key in ("max_position_embeddings", "n_positions", "max_seq_len"):
        value = config.get(key)
        if isinstance(value, int):
            return value
    return None


def _load_tokenizer(model_dir: Path) -> object:
    """Load `tokenizer.json` with the HuggingFace tokenizers library."""
    tokenizer_path = model_dir / TOKENIZER_FILE
    if not tokenizer_path.is_file():
        raise LoadError(f"Tokenizer not found: {tokenizer_path}")

    from tokenizers import Tokenizer

    try:
        tokenizer = Tokenizer.from_file(str(tokenizer_path))
    except Exception as err:
        raise LoadError(f"Cannot parse tokenizer {tokenizer_path}: {err}") from err
    logger.info("Tokenizer loaded", extra={"path": str(tokenizer_path)})
    return tokenizer


def _load_weights(model_dir: Path, device: torch.device) -> torch.nn.Module:
    """Build the causal LM from local files only and move it to `device`."""
    from transformers import AutoModelForCausalLM

    try:
        model = AutoModelForCausalLM.from_pretrained(str(model_dir), local_files_only=True)
    except (OSError, ValueError, RuntimeError) as err:
        raise LoadError(f"Failed to load model weights from {model_dir}: {err}") from err

    model = model.to(device)
    model.eval()
    return model


def load_backend(
    model_id: str,
    runtime_cfg: RuntimeConfig,
    progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
) -> TransformersBackend:
    """
    Load everything needed to generate with `model_id`.

    Here's what happens:

      1. Resolve the model directory and find its weights
      2. Verify the weights against checksums.sha256 (if configured and present)
      3. Load the tokenizer
      4. Load the weights onto the target device
      5. Work out the end-of-sequence ids and context length

    Between stages the cancel event is checked. A cancelled load cleans up
    whatever it already built and raises LoadCancelled.

    Raises:
        ValidationError: Malformed identifier.
        LoadError: Anything missing, corrupted, or rejected by the library.
        LoadCancelled: The cancel event was set.
    """

    def _report(fraction: float) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise LoadCancelled(f"Load of {model_id} was cancelled")
        if progress is not None:
            progress(fraction)

    _report(0.0)
    device = resolve_device(runtime_cfg.device)
    model_dir = resolve_model_directory(model_id, Path(runtime_cfg.models_directory))
    weights = find_model_weights(model_dir)
    if runtime_cfg.verify_checksums:
        verify_weights(model_dir, weights)
    _report(0.1)

    tokenizer = _load_tokenizer(model_dir)
    _report(0.4)

    model = _load_weights(model_dir, device)
    try:
        eos_token_ids = _read_eos_token_ids(model_dir, tokenizer)
    except LoadError:
        del model
        clear_device_cache(device)
        raise

    backend = TransformersBackend(
        model=model,
        tokenizer=tokenizer,
        device=device,
        eos_token_ids=eos_token_ids,
        max_context_length=_read_max_context(model_dir),
    )
    try:
        _report(1.0)
    except LoadCancelled:
        backend.close()
        raise

    logger.info(
        "Backend loaded",
        extra={
            "model_dir": str(model_dir),
            "device": str(device),
            "parameters": backend.parameter_count(),
            "weight_files": len(weights),
        },
    )
    return backend
