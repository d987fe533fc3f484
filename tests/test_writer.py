"""Tests for the content-addressed tile writer."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from mbtiles_compress.db import archive_session, open_destination_engine, open_source_engine, reflect_archive_tables
from mbtiles_compress.hasher import compute_tile_digest
from mbtiles_compress.schema import replicate_schema
from mbtiles_compress.writer import (
    IMAGES_UNIQUE_INDEX,
    MAP_LOOKUP_INDEX,
    DedupWriter,
    drop_helper_indexes,
    ensure_helper_indexes,
)
from tests.utils.mbtiles import BLUE, RED, query, source_id


@pytest.fixture
def destination(three_ref_archive: Path, tmp_path: Path) -> Iterator[tuple[Engine, Path]]:
    path = tmp_path / "out.mbtiles"
    source_engine = open_source_engine(three_ref_archive)
    engine = open_destination_engine(path)
    replicate_schema(three_ref_archive, source_engine, engine)
    source_engine.dispose()
    ensure_helper_indexes(engine)
    yield engine, path
    engine.dispose()


def _index_names(path: Path) -> set[str]:
    return {name for (name,) in query(path, "SELECT name FROM sqlite_master WHERE type = 'index'")}


def test_helper_indexes_are_created_and_dropped(destination) -> None:
    engine, path = destination

    assert {MAP_LOOKUP_INDEX, IMAGES_UNIQUE_INDEX} <= _index_names(path)

    drop_helper_indexes(engine)

    assert not {MAP_LOOKUP_INDEX, IMAGES_UNIQUE_INDEX} & _index_names(path)


def test_write_inserts_image_and_repoints_references(destination) -> None:
    engine, path = destination
    images, map_table = reflect_archive_tables(engine)
    payload = b"webp-red"
    digest = compute_tile_digest(payload)

    with archive_session(engine) as session:
        outcome = DedupWriter(session, images, map_table).write(source_id(RED), digest, payload)

    assert outcome.inserted is True
    assert outcome.references_updated == 2
    assert query(path, "SELECT tile_id, tile_data FROM images") == [(digest, payload)]
    assert query(path, "SELECT count(*) FROM map WHERE tile_id = ?", (digest,)) == [(2,)]


def test_same_digest_is_stored_once(destination) -> None:
    engine, path = destination
    images, map_table = reflect_archive_tables(engine)
    payload = b"identical output"
    digest = compute_tile_digest(payload)

    with archive_session(engine) as session:
        writer = DedupWriter(session, images, map_table)
        first = writer.write(source_id(RED), digest, payload)
        second = writer.write(source_id(BLUE), digest, payload)

    assert (first.inserted, second.inserted) == (True, False)
    assert (writer.images_inserted, writer.images_reused, writer.references_updated) == (1, 1, 3)
    assert query(path, "SELECT count(*) FROM images") == [(1,)]
    assert query(path, "SELECT DISTINCT tile_id FROM map") == [(digest,)]


def test_keep_original_preserves_failed_references(destination) -> None:
    engine, path = destination
    images, map_table = reflect_archive_tables(engine)
    blue_id = source_id(BLUE)

    with archive_session(engine) as session:
        writer = DedupWriter(session, images, map_table)
        assert writer.keep_original(blue_id, BLUE) is True
        assert writer.keep_original(blue_id, BLUE) is False

    assert query(path, "SELECT tile_data FROM images WHERE tile_id = ?", (blue_id,)) == [(BLUE,)]
    assert query(path, "SELECT count(*) FROM map WHERE tile_id = ?", (blue_id,)) == [(1,)]


def test_failed_statement_rolls_back_the_insert(destination, monkeypatch: pytest.MonkeyPatch) -> None:
    engine, path = destination
    images, map_table = reflect_archive_tables(engine)

    with archive_session(engine) as session:
        writer = DedupWriter(session, images, map_table)
        original_execute = session.execute
        calls = {"n": 0}

        def _fail_on_update(statement, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("disk full")
            return original_execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", _fail_on_update)
        with pytest.raises(RuntimeError):
            writer.write(source_id(RED), "deadbeef", b"payload")

    assert query(path, "SELECT count(*) FROM images") == [(0,)]
    assert query(path, "SELECT count(*) FROM map WHERE tile_id = 'deadbeef'") == [(0,)]
