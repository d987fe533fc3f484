"""Exception taxonomy for compression runs.

Configuration and structural errors are fatal and abort the run. Transcode
errors are per-tile: the orchestrator records them and moves on.
"""

from __future__ import annotations


class CompressError(RuntimeError):
    """Base class for every error raised by a compression run."""


class ConfigurationError(CompressError, ValueError):
    """Invalid settings or paths, detected before any archive is opened."""


class StructuralError(CompressError):
    """Schema replication or helper index creation failed in the destination.

    The destination archive is left in an inconsistent state and must be
    discarded.
    """


class TranscodeError(CompressError):
    """A single tile could not be re-encoded."""

    def __init__(self, tile_id: str, reason: str) -> None:
        super().__init__(f"tile {tile_id}: {reason}")
        self.tile_id = tile_id
        self.reason = reason


__all__ = ["CompressError", "ConfigurationError", "StructuralError", "TranscodeError"]
