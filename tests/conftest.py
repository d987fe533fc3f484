from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

# Keep the rotating log file out of the working tree during test runs.
os.environ.setdefault("MBTILES_COMPRESS_LOG_DIR", tempfile.mkdtemp(prefix="mbtiles-compress-log-"))

from tests.utils.mbtiles import BLUE, RED, build_archive  # noqa: E402


@pytest.fixture
def three_ref_archive(tmp_path: Path) -> Path:
    """Three references over two distinct images, one of them shared."""

    return build_archive(
        tmp_path / "source.mbtiles",
        [(0, 0, 0, RED), (1, 0, 0, RED), (1, 1, 0, BLUE)],
    )
