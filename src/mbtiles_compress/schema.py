"""Replicate the catalog structure of a source archive into a fresh destination."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import insert, select, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from mbtiles_compress.db import IMAGES_TABLE, MAP_TABLE, METADATA_TABLE, reflect_table, validate_identifier
from mbtiles_compress.errors import StructuralError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "schema"})

# Tables whose rows are produced by the transcode stage instead of a bulk copy.
TRANSFORMED_TABLES: frozenset[str] = frozenset({IMAGES_TABLE})
_SOURCE_ALIAS = "source"


@dataclass(frozen=True)
class CatalogObject:
    """One entry of ``sqlite_master``."""

    name: str
    type: str
    sql: str

    @property
    def is_table(self) -> bool:
        return self.type == "table"


def read_catalog(source_engine: Engine) -> list[CatalogObject]:
    """Return user-defined tables, indexes, views and triggers of the source archive.

    SQLite internal objects (``sqlite_sequence``, ``sqlite_stat1`` ...) and
    automatic indexes, which carry no SQL, are skipped.
    """

    with source_engine.connect() as conn:
        rows = conn.execute(text("SELECT name, type, sql FROM sqlite_master ORDER BY rowid")).all()

    objects = [
        CatalogObject(name=name, type=obj_type, sql=sql)
        for name, obj_type, sql in rows
        if sql and not name.startswith("sqlite_")
    ]
    return objects


def _require_layout(objects: list[CatalogObject]) -> None:
    tables = {obj.name for obj in objects if obj.is_table}
    missing = sorted({IMAGES_TABLE, MAP_TABLE} - tables)
    if missing:
        raise StructuralError(
            "Source archive does not use the map/images layout; missing table(s): " + ", ".join(missing)
        )


def _execute_ddl(conn: Connection, obj: CatalogObject) -> None:
    try:
        conn.exec_driver_sql(obj.sql)
    except SQLAlchemyError as exc:
        raise StructuralError(f"Failed to create {obj.type} {obj.name!r}: {exc}") from exc


def _copy_tables(conn: Connection, source_path: Path, tables: list[CatalogObject]) -> dict[str, int]:
    """Bulk copy ``tables`` from the attached source, returning copied row counts."""

    copied: dict[str, int] = {}
    source_uri = f"{source_path.resolve().as_uri()}?mode=ro"
    try:
        conn.exec_driver_sql(f"ATTACH DATABASE ? AS {_SOURCE_ALIAS}", (source_uri,))
    except SQLAlchemyError as exc:
        raise StructuralError(f"Failed to attach source archive: {exc}") from exc

    try:
        for obj in tables:
            quoted = validate_identifier(obj.name)
            try:
                result = conn.exec_driver_sql(
                    f"INSERT INTO main.{quoted} SELECT * FROM {_SOURCE_ALIAS}.{quoted}"
                )
            except SQLAlchemyError as exc:
                raise StructuralError(f"Failed to copy table {obj.name!r}: {exc}") from exc
            copied[obj.name] = result.rowcount
            LOGGER.info("table_copied", extra={"table": obj.name, "rows": result.rowcount})
    finally:
        conn.exec_driver_sql(f"DETACH DATABASE {_SOURCE_ALIAS}")

    return copied


def replicate_schema(source_path: Path, source_engine: Engine, destination_engine: Engine) -> dict[str, int]:
    """Recreate the source catalog in the destination and copy non-image rows.

    Tables are created first, then filled from the attached source, then
    indexes, views and triggers are created so that triggers never fire on
    copied rows and indexes are built once. The ``images`` table is left
    empty for the transcode stage; ``map`` rows keep their source tile ids
    until the writer repoints them.

    Raises:
        StructuralError: on any failing statement or an unsupported layout.
    """

    objects = read_catalog(source_engine)
    _require_layout(objects)

    tables = [obj for obj in objects if obj.is_table]
    others = [obj for obj in objects if not obj.is_table]
    copy_targets = [obj for obj in tables if obj.name not in TRANSFORMED_TABLES]

    LOGGER.info(
        "schema_replication_start",
        extra={"tables": len(tables), "structural_objects": len(others)},
    )

    # ATTACH cannot run inside a transaction.
    with destination_engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
        for obj in tables:
            _execute_ddl(conn, obj)
        copied = _copy_tables(conn, source_path, copy_targets)
        for obj in others:
            _execute_ddl(conn, obj)

    LOGGER.info("schema_replicated", extra={"copied_tables": len(copied)})
    return copied


def rewrite_format_metadata(destination_engine: Engine, tile_format: str) -> bool:
    """Point the ``format`` metadata entry at ``tile_format``.

    Returns ``False`` when the archive has no usable ``metadata`` table.
    """

    try:
        metadata = reflect_table(destination_engine, METADATA_TABLE)
    except StructuralError:
        LOGGER.warning("metadata_table_missing")
        return False
    if "name" not in metadata.c or "value" not in metadata.c:
        LOGGER.warning("metadata_table_unexpected_columns", extra={"columns": list(metadata.c.keys())})
        return False

    with destination_engine.begin() as conn:
        existing = conn.execute(select(metadata.c.value).where(metadata.c.name == "format")).all()
        previous = existing[0][0] if existing else None
        if not existing:
            conn.execute(insert(metadata).values(name="format", value=tile_format))
        else:
            conn.execute(update(metadata).where(metadata.c.name == "format").values(value=tile_format))

    LOGGER.info("metadata_format_rewritten", extra={"previous": previous, "format": tile_format})
    return True


__all__ = ["CatalogObject", "TRANSFORMED_TABLES", "read_catalog", "replicate_schema", "rewrite_format_metadata"]
