"""End-to-end orchestration of a compression run."""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from mbtiles_compress.codec import TARGET_FORMAT, WebpOptions, transcode_or_fail
from mbtiles_compress.config import TranscodeConfig
from mbtiles_compress.db import (
    archive_session,
    open_destination_engine,
    open_source_engine,
    reflect_archive_tables,
)
from mbtiles_compress.errors import ConfigurationError, StructuralError, TranscodeError
from mbtiles_compress.hasher import compute_tile_digest
from mbtiles_compress.limiter import BoundedExecutor
from mbtiles_compress.progress import CompletionEvent, ProgressReporter, RunState
from mbtiles_compress.schema import replicate_schema, rewrite_format_metadata
from mbtiles_compress.tile_source import SourceTile, count_source_tiles, iter_source_tiles
from mbtiles_compress.writer import DedupWriter, drop_helper_indexes, ensure_helper_indexes
from utils.logging import get_logger

Transcoder = Callable[[Any, bytes], bytes]

_FINALIZE_STATEMENTS: tuple[str, ...] = (
    "PRAGMA optimize",
    "ANALYZE",
    "VACUUM",
    "PRAGMA wal_checkpoint(TRUNCATE)",
)


class PipelineState(str, Enum):
    INITIALIZING = "initializing"
    REPLICATING_SCHEMA = "replicating_schema"
    BUILDING_HELPER_INDEX = "building_helper_index"
    TRANSCODING = "transcoding"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunSummary:
    """Counts reported to the caller once both archives are closed."""

    processed: int
    failed: int
    images_written: int
    images_reused: int
    references_updated: int
    elapsed: float
    total: int | None = None
    finalize_error: str | None = None

    @property
    def succeeded(self) -> int:
        return self.processed - self.failed


@dataclass(frozen=True)
class _TaskOutput:
    data: bytes
    digest: str
    elapsed: float


class CompressionPipeline:
    """Replicate an archive and re-encode every stored tile into it.

    The coordinating thread owns the destination archive: it performs every
    write, while tile re-encoding and hashing run on the bounded pool.
    """

    def __init__(self, config: TranscodeConfig, transcoder: Transcoder | None = None) -> None:
        """Initialize the pipeline.

        Args:
            config: Run configuration; validated here, before any archive I/O.
            transcoder: Optional ``(tile_id, data) -> bytes`` override of the
                WebP codec. It must raise to signal a failed tile.
        """

        self._config = config.validate()
        if transcoder is None:
            options = WebpOptions.from_config(self._config)

            def transcoder(tile_id: Any, data: bytes) -> bytes:
                return transcode_or_fail(tile_id, data, options)

        self._transcoder = transcoder
        self._logger = get_logger(__name__, extra={"component": "pipeline"})
        self.states: list[PipelineState] = []

    @property
    def state(self) -> PipelineState | None:
        return self.states[-1] if self.states else None

    def _enter(self, state: PipelineState) -> None:
        self.states.append(state)
        self._logger.info("pipeline_state", extra={"state": state.value})

    def run(self, source: Path, destination: Path) -> RunSummary:
        """Compress ``source`` into the not yet existing ``destination``.

        Raises:
            ConfigurationError: when an archive cannot be opened or the
                destination already holds data.
            StructuralError: when the catalog cannot be replicated, or when a
                failed tile cannot be stored unchanged.
        """

        started = time.monotonic()
        self._enter(PipelineState.INITIALIZING)
        source_engine: Engine | None = None
        destination_engine: Engine | None = None
        try:
            if destination.exists() and destination.stat().st_size > 0:
                raise ConfigurationError(f"Destination already exists: {destination}")
            source_engine, destination_engine = self._open_archives(source, destination)

            self._enter(PipelineState.REPLICATING_SCHEMA)
            replicate_schema(source, source_engine, destination_engine)
            rewrite_format_metadata(destination_engine, TARGET_FORMAT)

            self._enter(PipelineState.BUILDING_HELPER_INDEX)
            ensure_helper_indexes(destination_engine)

            self._enter(PipelineState.TRANSCODING)
            total = None if self._config.skip_count else count_source_tiles(source_engine)
            self._logger.info("tiles_found", extra={"total": total})
            state, writer = self._run_transcode(source_engine, destination_engine, total)

            self._enter(PipelineState.FINALIZING)
            finalize_error = self._finalize(destination_engine)
        except BaseException as exc:
            self._enter(PipelineState.FAILED)
            self._logger.error("pipeline_failed", extra={"error": str(exc) or type(exc).__name__})
            raise
        finally:
            for engine in (source_engine, destination_engine):
                if engine is not None:
                    engine.dispose()

        summary = RunSummary(
            processed=state.processed,
            failed=state.failed,
            images_written=writer.images_inserted,
            images_reused=writer.images_reused,
            references_updated=writer.references_updated,
            elapsed=time.monotonic() - started,
            total=total,
            finalize_error=finalize_error,
        )
        self._enter(PipelineState.DONE)
        self._logger.info(
            "pipeline_complete",
            extra={
                "processed": summary.processed,
                "failed": summary.failed,
                "images_written": summary.images_written,
                "elapsed_seconds": round(summary.elapsed, 2),
            },
        )
        return summary

    def _open_archives(self, source: Path, destination: Path) -> tuple[Engine, Engine]:
        source_engine = open_source_engine(source)
        try:
            with source_engine.connect() as conn:
                conn.exec_driver_sql("SELECT count(*) FROM sqlite_master").scalar_one()
        except SQLAlchemyError as exc:
            source_engine.dispose()
            raise ConfigurationError(f"Cannot open source archive {source}: {exc}") from exc

        destination_engine = open_destination_engine(destination)
        try:
            with destination_engine.connect():
                pass
        except SQLAlchemyError as exc:
            source_engine.dispose()
            destination_engine.dispose()
            raise ConfigurationError(f"Cannot open destination archive {destination}: {exc}") from exc
        return source_engine, destination_engine

    def _encode(self, tile: SourceTile) -> _TaskOutput:
        """Worker-side unit of work: transcode then hash."""

        started = time.monotonic()
        output = self._transcoder(tile.tile_id, tile.data)
        digest = compute_tile_digest(output, self._config.digest_algorithm)
        return _TaskOutput(data=output, digest=digest, elapsed=time.monotonic() - started)

    def _run_transcode(
        self, source_engine: Engine, destination_engine: Engine, total: int | None
    ) -> tuple[RunState, DedupWriter]:
        images, map_table = reflect_archive_tables(destination_engine)
        state = RunState()
        reporter = ProgressReporter(state, total=total, interval=self._config.progress_interval)
        pending: dict[Future[Any], SourceTile] = {}

        with archive_session(destination_engine) as session:
            writer = DedupWriter(session, images, map_table)

            def _complete(futures: list[Future[Any]]) -> None:
                for future in futures:
                    self._handle_completion(future, pending.pop(future), writer, reporter)

            with BoundedExecutor(self._config.concurrency) as executor:
                for tile in iter_source_tiles(source_engine):
                    future, finished = executor.submit(self._encode, tile)
                    pending[future] = tile
                    _complete(finished)
                _complete(list(executor.drain()))

        self._logger.info(
            "transcode_complete",
            extra={
                "processed": state.processed,
                "failed": state.failed,
                "images_written": writer.images_inserted,
                "images_reused": writer.images_reused,
            },
        )
        if state.failed:
            self._logger.warning("tiles_failed", extra={"failed": state.failed})
        return state, writer

    def _handle_completion(
        self,
        future: Future[Any],
        tile: SourceTile,
        writer: DedupWriter,
        reporter: ProgressReporter,
    ) -> None:
        reason: str
        try:
            output: _TaskOutput = future.result()
        except TranscodeError as exc:
            reason = exc.reason
        except Exception as exc:  # injected codecs may raise anything
            reason = str(exc) or type(exc).__name__
        else:
            try:
                writer.write(tile.tile_id, output.digest, output.data)
            except SQLAlchemyError as exc:
                reason = f"write failed: {exc}"
            else:
                reporter.record(CompletionEvent(tile_id=tile.tile_id, ok=True, elapsed=output.elapsed))
                return

        self._logger.warning("tile_transcode_failed", extra={"tile_id": tile.tile_id, "error": reason})
        try:
            writer.keep_original(tile.tile_id, tile.data)
        except SQLAlchemyError as exc:
            self._logger.error(
                "tile_original_keep_failed",
                extra={"tile_id": tile.tile_id, "error": str(exc)},
            )
            # The tile's map rows would point at a missing image.
            raise StructuralError(f"Cannot keep original bytes of tile {tile.tile_id}: {exc}") from exc
        reporter.record(CompletionEvent(tile_id=tile.tile_id, ok=False, error=reason))

    def _finalize(self, destination_engine: Engine) -> str | None:
        """Drop helper indexes and compact the destination; errors are reported, not raised."""

        try:
            drop_helper_indexes(destination_engine)
            with destination_engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                for statement in _FINALIZE_STATEMENTS:
                    conn.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            self._logger.warning("finalize_failed", extra={"error": str(exc)})
            return str(exc)
        self._logger.info("destination_optimized")
        return None


__all__ = ["CompressionPipeline", "PipelineState", "RunSummary", "Transcoder"]
