"""Content digests used as tile identifiers in the destination archive."""

from __future__ import annotations

import hashlib
from typing import Final

import xxhash

from mbtiles_compress.errors import ConfigurationError

DEFAULT_DIGEST_ALGO: Final[str] = "md5"


def compute_tile_digest(data: bytes, algorithm: str = DEFAULT_DIGEST_ALGO) -> str:
    """Return the lowercase hexadecimal digest of ``data``.

    ``md5`` matches the tile id convention used by MBTiles writers and yields
    32 characters; ``sha256`` yields 64 and ``xxh64`` 16. Empty input is
    valid and hashes like any other buffer.

    Args:
        data: Encoded tile bytes.
        algorithm: One of ``md5``, ``sha256`` or ``xxh64``.

    Returns:
        Hex digest string of fixed length for the chosen algorithm.
    """

    if algorithm == "md5":
        return hashlib.md5(data, usedforsecurity=False).hexdigest()
    if algorithm == "sha256":
        return hashlib.sha256(data).hexdigest()
    if algorithm == "xxh64":
        return f"{xxhash.xxh64_intdigest(data):016x}"
    raise ConfigurationError(f"Unsupported digest algorithm: {algorithm!r}")


__all__ = ["DEFAULT_DIGEST_ALGO", "compute_tile_digest"]
