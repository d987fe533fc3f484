"""Tests for catalog replication into a fresh destination archive."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from mbtiles_compress.db import open_destination_engine, open_source_engine, validate_identifier
from mbtiles_compress.errors import StructuralError
from mbtiles_compress.schema import read_catalog, replicate_schema, rewrite_format_metadata
from tests.utils.mbtiles import query


@pytest.fixture
def engines(three_ref_archive: Path, tmp_path: Path) -> Iterator[tuple[Engine, Engine, Path]]:
    destination = tmp_path / "out.mbtiles"
    source_engine = open_source_engine(three_ref_archive)
    destination_engine = open_destination_engine(destination)
    yield source_engine, destination_engine, destination
    source_engine.dispose()
    destination_engine.dispose()


def _object_names(path: Path, obj_type: str) -> set[str]:
    return {name for (name,) in query(path, "SELECT name FROM sqlite_master WHERE type = ?", (obj_type,))}


def test_structure_and_rows_are_replicated(three_ref_archive: Path, engines) -> None:
    source_engine, destination_engine, destination = engines

    copied = replicate_schema(three_ref_archive, source_engine, destination_engine)

    assert copied == {"metadata": 2, "map": 3}
    assert _object_names(destination, "table") == {"metadata", "map", "images"}
    assert {"name", "map_index", "images_id"} <= _object_names(destination, "index")
    assert _object_names(destination, "view") == {"tiles"}
    assert query(destination, "SELECT count(*) FROM images") == [(0,)]
    assert sorted(query(destination, "SELECT tile_id FROM map")) == sorted(
        query(three_ref_archive, "SELECT tile_id FROM map")
    )


def test_internal_tables_are_skipped_and_user_tables_copied(tmp_path: Path, three_ref_archive: Path, engines) -> None:
    conn = sqlite3.connect(three_ref_archive)
    conn.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY AUTOINCREMENT, body TEXT)")
    conn.execute("INSERT INTO notes (body) VALUES ('hello')")
    conn.execute("CREATE TRIGGER notes_guard AFTER INSERT ON notes BEGIN SELECT 1; END")
    conn.commit()
    conn.close()
    source_engine, destination_engine, destination = engines

    names = {obj.name for obj in read_catalog(source_engine)}
    replicate_schema(three_ref_archive, source_engine, destination_engine)

    assert "sqlite_sequence" not in names
    assert query(destination, "SELECT body FROM notes") == [("hello",)]
    assert _object_names(destination, "trigger") == {"notes_guard"}


def test_flat_tiles_layout_is_rejected(tmp_path: Path) -> None:
    source = tmp_path / "flat.mbtiles"
    conn = sqlite3.connect(source)
    conn.execute("CREATE TABLE metadata (name text, value text)")
    conn.execute(
        "CREATE TABLE tiles (zoom_level integer, tile_column integer, tile_row integer, tile_data blob)"
    )
    conn.commit()
    conn.close()
    source_engine = open_source_engine(source)
    destination_engine = open_destination_engine(tmp_path / "out.mbtiles")
    try:
        with pytest.raises(StructuralError, match="map/images layout"):
            replicate_schema(source, source_engine, destination_engine)
    finally:
        source_engine.dispose()
        destination_engine.dispose()


def test_format_metadata_is_rewritten(three_ref_archive: Path, engines) -> None:
    source_engine, destination_engine, destination = engines
    replicate_schema(three_ref_archive, source_engine, destination_engine)

    assert rewrite_format_metadata(destination_engine, "webp") is True

    assert query(destination, "SELECT value FROM metadata WHERE name = 'format'") == [("webp",)]
    assert query(three_ref_archive, "SELECT value FROM metadata WHERE name = 'format'") == [("png",)]


def test_format_metadata_is_added_when_absent(three_ref_archive: Path, engines) -> None:
    conn = sqlite3.connect(three_ref_archive)
    conn.execute("DELETE FROM metadata WHERE name = 'format'")
    conn.commit()
    conn.close()
    source_engine, destination_engine, destination = engines
    replicate_schema(three_ref_archive, source_engine, destination_engine)

    rewrite_format_metadata(destination_engine, "webp")

    assert query(destination, "SELECT value FROM metadata WHERE name = 'format'") == [("webp",)]


@pytest.mark.parametrize("name", ["map; DROP TABLE images", "1abc", "", "a-b", 'x"y'])
def test_unsafe_identifiers_are_refused(name: str) -> None:
    with pytest.raises(StructuralError):
        validate_identifier(name)


def test_plain_identifiers_are_quoted() -> None:
    assert validate_identifier("metadata") == '"metadata"'
