"""SQLAlchemy engines and table helpers for MBTiles archives."""

from __future__ import annotations

import re
import sqlite3
from pathlib import Path
from typing import Any

from sqlalchemy import MetaData, Table, create_engine, event
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import NoSuchTableError
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from mbtiles_compress.errors import StructuralError
from utils.logging import get_logger

LOGGER = get_logger(__name__)

IMAGES_TABLE = "images"
MAP_TABLE = "map"
METADATA_TABLE = "metadata"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Return ``name`` quoted for SQL after checking it against the identifier allow-list."""

    if not _IDENTIFIER_RE.match(name or ""):
        raise StructuralError(f"Refusing to use catalog object name {name!r} in a statement")
    return f'"{name}"'


def open_source_engine(path: Path) -> Engine:
    """Return an engine over ``path`` opened read-only through a SQLite URI."""

    uri = f"{path.resolve().as_uri()}?mode=ro"

    def _connect() -> sqlite3.Connection:
        return sqlite3.connect(uri, uri=True, check_same_thread=False, timeout=30.0)

    return create_engine("sqlite://", creator=_connect, poolclass=NullPool, future=True)


def open_destination_engine(path: Path) -> Engine:
    """Return an engine over the writable destination archive in WAL mode."""

    # URL.create keeps "%" in the path literal; "uri" lets ATTACH accept the source file: URI.
    engine = create_engine(
        URL.create("sqlite", database=str(path.resolve())),
        future=True,
        connect_args={"timeout": 30.0, "uri": True},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        """Configure SQLite for write-ahead durability."""

        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout = 30000")
        finally:
            cursor.close()

    return engine


def archive_session(engine: Engine) -> Session:
    """Open a SQLAlchemy session bound to an archive engine."""

    return Session(engine, future=True)


def reflect_table(engine: Engine, name: str) -> Table:
    """Reflect a single table, raising :class:`StructuralError` when it is missing."""

    try:
        return Table(name, MetaData(), autoload_with=engine)
    except NoSuchTableError as exc:
        raise StructuralError(f"Archive has no {name!r} table") from exc


def reflect_archive_tables(engine: Engine) -> tuple[Table, Table]:
    """Return the ``images`` and ``map`` tables of a digest-keyed archive."""

    images = reflect_table(engine, IMAGES_TABLE)
    map_table = reflect_table(engine, MAP_TABLE)
    for table, column in ((images, "tile_id"), (images, "tile_data"), (map_table, "tile_id")):
        if column not in table.c:
            raise StructuralError(f"Table {table.name!r} has no {column!r} column")
    return images, map_table


def dialect_insert(session: Session, table: Any) -> Any:
    """Return a dialect-aware INSERT statement supporting ON CONFLICT."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine.")

    name = bind.dialect.name
    if name == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"Unsupported dialect for upsert: {name}")


__all__ = [
    "IMAGES_TABLE",
    "MAP_TABLE",
    "METADATA_TABLE",
    "archive_session",
    "dialect_insert",
    "open_destination_engine",
    "open_source_engine",
    "reflect_archive_tables",
    "reflect_table",
    "validate_identifier",
]
