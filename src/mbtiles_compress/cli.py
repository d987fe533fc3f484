"""CLI entrypoint for compressing an MBTiles archive into WebP tiles.

Flags override values from ``config/settings.yaml``; the merged configuration
is validated before any file is touched.
"""

from __future__ import annotations

from pathlib import Path

import typer

from mbtiles_compress.config import TranscodeConfig, load_settings
from mbtiles_compress.errors import CompressError, ConfigurationError
from mbtiles_compress.pipeline import CompressionPipeline, RunSummary
from utils.logging import get_logger, set_log_level

LOGGER = get_logger(__name__, extra={"component": "cli"})

_SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


def prepare_paths(source: Path, destination: Path, overwrite: bool) -> None:
    """Check the source, create the destination directory and clear a previous output.

    Raises:
        ConfigurationError: for a missing or non-file source, or an existing
            destination without ``overwrite``.
    """

    if not source.exists():
        raise ConfigurationError(f"Source file does not exist: {source}")
    if not source.is_file():
        raise ConfigurationError(f"Source path is not a file: {source}")
    if source.resolve() == destination.resolve():
        raise ConfigurationError("Source and destination must be different files")

    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        if not overwrite:
            raise ConfigurationError(f"Destination already exists: {destination}. Use --force to overwrite.")
        LOGGER.info("destination_removed", extra={"path": str(destination)})
        destination.unlink()
    for suffix in _SIDE_FILE_SUFFIXES:
        side_file = destination.with_name(destination.name + suffix)
        if side_file.exists():
            side_file.unlink()


def build_config(
    settings_path: Path | None,
    *,
    quality: int | None = None,
    alpha_quality: int | None = None,
    method: int | None = None,
    concurrency: int | None = None,
    force: bool | None = None,
    skip_count: bool | None = None,
    digest: str | None = None,
) -> TranscodeConfig:
    """Merge settings file values with command line overrides and validate the result."""

    settings = load_settings(settings_path)
    set_log_level(settings.log_level)
    config = settings.transcode.with_overrides(
        quality=quality,
        alpha_quality=alpha_quality,
        method=method,
        concurrency=concurrency,
        overwrite=force,
        skip_count=skip_count,
        digest_algorithm=digest.lower() if digest else None,
    )
    return config.validate()


def _report(summary: RunSummary) -> None:
    typer.echo(f"Successfully processed {summary.processed} image tiles.")
    typer.echo(
        f"Stored {summary.images_written} distinct images "
        f"({summary.images_reused} duplicates collapsed) in {summary.elapsed:.1f}s."
    )
    if summary.failed > 0:
        typer.secho(
            f"Warning: {summary.failed} tiles failed to compress and were kept unchanged.",
            fg=typer.colors.YELLOW,
        )
    if summary.finalize_error:
        typer.secho(f"Warning: optimizing the destination failed: {summary.finalize_error}", fg=typer.colors.YELLOW)


def main(
    source: Path = typer.Argument(..., help="Path to source MBTiles file."),
    destination: Path = typer.Argument(..., help="Path to output compressed MBTiles file."),
    quality: int | None = typer.Option(None, "--quality", "-q", help="WebP compression quality (0-100, default: 75)."),
    alpha_quality: int | None = typer.Option(
        None, "--alpha-quality", "-a", help="WebP alpha quality (0-100, default: 100)."
    ),
    method: int | None = typer.Option(None, "--method", "-m", help="WebP compression method (0-6, default: 4)."),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Number of parallel compression operations (1-100, default: 20)."
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite destination if it exists."),
    skip_count: bool = typer.Option(False, "--skip-count", "-s", help="Skip counting rows before compression."),
    digest: str | None = typer.Option(None, "--digest", help="Tile id digest: md5 (default), sha256 or xxh64."),
    config: Path | None = typer.Option(
        None,
        "--config",
        exists=True,
        dir_okay=False,
        help="Settings YAML file. Defaults to config/settings.yaml or $MBTILES_COMPRESS_SETTINGS.",
    ),
) -> None:
    """Compress MBTiles files using WebP compression."""

    try:
        run_config = build_config(
            config,
            quality=quality,
            alpha_quality=alpha_quality,
            method=method,
            concurrency=concurrency,
            force=force or None,
            skip_count=skip_count or None,
            digest=digest,
        )
        prepare_paths(source, destination, run_config.overwrite)
        summary = CompressionPipeline(run_config).run(source, destination)
    except CompressError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    _report(summary)


def run() -> None:
    """Console script entrypoint."""

    typer.run(main)


if __name__ == "__main__":
    run()


__all__ = ["build_config", "main", "prepare_paths", "run"]
