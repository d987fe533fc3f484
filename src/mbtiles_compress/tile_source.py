"""Streaming reader over the stored images of a source archive."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from mbtiles_compress.db import IMAGES_TABLE, reflect_table
from utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class SourceTile:
    """One stored image of the source archive."""

    tile_id: str
    data: bytes


def count_source_tiles(engine: Engine) -> int:
    """Return the number of stored images; a full scan on large archives."""

    images = reflect_table(engine, IMAGES_TABLE)
    with engine.connect() as conn:
        return int(conn.execute(select(func.count()).select_from(images)).scalar_one())


def iter_source_tiles(engine: Engine, batch_size: int = 500) -> Iterator[SourceTile]:
    """Lazily yield every stored image of the source archive.

    The iterator is single-pass: rows are streamed from an open cursor that
    lives until the generator is exhausted or closed.

    Args:
        engine: Read-only engine over the source archive.
        batch_size: Rows fetched from the cursor per round trip.

    Yields:
        SourceTile instances in storage order.
    """

    images = reflect_table(engine, IMAGES_TABLE)
    stmt = select(images.c.tile_id, images.c.tile_data)

    with engine.connect() as conn:
        result = conn.execution_options(stream_results=True, yield_per=batch_size).execute(stmt)
        for tile_id, tile_data in result:
            if tile_id is None:
                LOGGER.warning("source_tile_without_id_skipped")
                continue
            yield SourceTile(tile_id=tile_id, data=bytes(tile_data or b""))


__all__ = ["SourceTile", "count_source_tiles", "iter_source_tiles"]
