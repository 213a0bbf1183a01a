# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
SHA256 helpers for model weights.

Weight files can be tens of gigabytes, so they are hashed in chunks and
never read into memory whole.
"""

import hashlib
from pathlib import Path

HASH_BUFFER_SIZE = 1024 * 1024


def compute_sha256(file_path: Path) -> str:
    """
    Lowercase hex SHA256 digest of a file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        OSError: If the file can't be read.
    """
    hasher = hashlib.sha256()
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(HASH_BUFFER_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
