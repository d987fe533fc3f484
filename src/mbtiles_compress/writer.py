"""Content-addressed persistence of transcoded tiles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Table, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mbtiles_compress.db import IMAGES_TABLE, MAP_TABLE, dialect_insert
from mbtiles_compress.errors import StructuralError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "writer"})

MAP_LOOKUP_INDEX = "mbtiles_compress_map_tile_id"
IMAGES_UNIQUE_INDEX = "mbtiles_compress_images_tile_id"

_HELPER_INDEXES: tuple[tuple[str, str], ...] = (
    (MAP_LOOKUP_INDEX, f'CREATE INDEX IF NOT EXISTS "{MAP_LOOKUP_INDEX}" ON "{MAP_TABLE}" (tile_id)'),
    (IMAGES_UNIQUE_INDEX, f'CREATE UNIQUE INDEX IF NOT EXISTS "{IMAGES_UNIQUE_INDEX}" ON "{IMAGES_TABLE}" (tile_id)'),
)


def ensure_helper_indexes(engine: Engine) -> None:
    """Create the reference lookup index and the digest uniqueness index.

    Raises:
        StructuralError: when an index cannot be created.
    """

    with engine.connect() as conn:
        for name, ddl in _HELPER_INDEXES:
            try:
                conn.exec_driver_sql(ddl)
            except SQLAlchemyError as exc:
                raise StructuralError(f"Failed to create helper index {name!r}: {exc}") from exc
        conn.commit()
    LOGGER.info("helper_indexes_created", extra={"indexes": [name for name, _ in _HELPER_INDEXES]})


def drop_helper_indexes(engine: Engine) -> None:
    """Drop the indexes created by :func:`ensure_helper_indexes`."""

    with engine.connect() as conn:
        for name, _ in _HELPER_INDEXES:
            conn.exec_driver_sql(f'DROP INDEX IF EXISTS "{name}"')
        conn.commit()
    LOGGER.info("helper_indexes_dropped")


@dataclass(frozen=True)
class WriteOutcome:
    """Result of persisting one tile."""

    digest: str
    inserted: bool
    references_updated: int


class DedupWriter:
    """Insert tiles by digest at most once and repoint their map references.

    Every call runs in its own transaction on ``session``; the image insert
    and the reference update commit together or not at all.
    """

    def __init__(self, session: Session, images: Table, map_table: Table) -> None:
        self._session = session
        self._images = images
        self._map = map_table
        self.images_inserted = 0
        self.images_reused = 0
        self.references_updated = 0

    def _insert_if_absent(self, tile_id: Any, data: bytes) -> bool:
        stmt = (
            dialect_insert(self._session, self._images)
            .values({self._images.c.tile_id: tile_id, self._images.c.tile_data: data})
            .on_conflict_do_nothing()
        )
        return self._session.execute(stmt).rowcount > 0

    def write(self, source_tile_id: Any, digest: str, data: bytes) -> WriteOutcome:
        """Store ``data`` under ``digest`` and move references off ``source_tile_id``."""

        with self._session.begin():
            inserted = self._insert_if_absent(digest, data)
            moved = 0
            if digest != source_tile_id:
                moved = self._session.execute(
                    update(self._map).where(self._map.c.tile_id == source_tile_id).values(tile_id=digest)
                ).rowcount

        if inserted:
            self.images_inserted += 1
        else:
            self.images_reused += 1
        self.references_updated += moved
        return WriteOutcome(digest=digest, inserted=inserted, references_updated=moved)

    def keep_original(self, source_tile_id: Any, data: bytes) -> bool:
        """Store the untouched source bytes so references of a failed tile still resolve."""

        with self._session.begin():
            inserted = self._insert_if_absent(source_tile_id, data)
        return inserted


__all__ = [
    "IMAGES_UNIQUE_INDEX",
    "MAP_LOOKUP_INDEX",
    "DedupWriter",
    "WriteOutcome",
    "drop_helper_indexes",
    "ensure_helper_indexes",
]
