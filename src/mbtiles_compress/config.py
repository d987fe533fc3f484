"""Configuration loader and typed settings for compression runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from mbtiles_compress.errors import ConfigurationError

SUPPORTED_DIGESTS: frozenset[str] = frozenset({"md5", "sha256", "xxh64"})
MAX_CONCURRENCY = 100
_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _check_range(name: str, value: Any, low: int, high: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ConfigurationError(f"{name} must be a number between {low} and {high}, got {value!r}")


@dataclass(frozen=True)
class TranscodeConfig:
    """Run configuration for a single compression run.

    Instances are immutable; use :meth:`with_overrides` to derive a new one.
    """

    quality: int = 75
    alpha_quality: int = 100
    method: int = 4
    concurrency: int = 20
    overwrite: bool = False
    skip_count: bool = False
    digest_algorithm: str = "md5"
    progress_interval: int = 100

    def validate(self) -> "TranscodeConfig":
        """Raise :class:`ConfigurationError` for out-of-range values, return ``self`` otherwise."""

        _check_range("Quality", self.quality, 0, 100)
        _check_range("Alpha quality", self.alpha_quality, 0, 100)
        _check_range("Method", self.method, 0, 6)
        _check_range("Concurrency", self.concurrency, 1, MAX_CONCURRENCY)
        if isinstance(self.progress_interval, bool) or not isinstance(self.progress_interval, int) or self.progress_interval < 1:
            raise ConfigurationError(f"Progress interval must be a positive integer, got {self.progress_interval!r}")
        if self.digest_algorithm not in SUPPORTED_DIGESTS:
            supported = ", ".join(sorted(SUPPORTED_DIGESTS))
            raise ConfigurationError(f"Unsupported digest algorithm {self.digest_algorithm!r}; expected one of {supported}")
        return self

    def with_overrides(self, **overrides: Any) -> "TranscodeConfig":
        """Return a copy with every non-``None`` override applied."""

        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values)


@dataclass
class Settings:
    """Top-level application settings."""

    transcode: TranscodeConfig = field(default_factory=TranscodeConfig)
    log_level: str = "INFO"


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover
        return module_path.parent


def _default_settings_paths() -> list[Path]:
    """Return candidate settings paths ordered by preference."""

    candidates: list[Path] = []
    for candidate in (
        (Path.cwd() / "config" / "settings.yaml").resolve(),
        (_project_root() / "config" / "settings.yaml").resolve(),
    ):
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("MBTILES_COMPRESS_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    defaults = _default_settings_paths()
    for candidate in defaults:
        if candidate.exists():
            return candidate
    return defaults[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load settings from a YAML file, falling back to defaults.

    Missing files, non-mapping documents and keys of the wrong type are
    ignored; a file that is not valid YAML raises :class:`ConfigurationError`.
    Range checks happen later in :meth:`TranscodeConfig.validate`, after
    command line overrides are applied.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        try:
            raw = yaml.safe_load(fp) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Malformed settings file {path}: {exc}") from exc

    if not isinstance(raw, dict):
        return settings

    log_level = raw.get("log_level")
    if isinstance(log_level, str) and log_level.upper() in _LOG_LEVELS:
        settings.log_level = log_level.upper()

    transcode_raw = _as_dict(raw.get("transcode"))
    overrides: dict[str, Any] = {}
    for key in ("quality", "alpha_quality", "method", "concurrency", "progress_interval"):
        value = transcode_raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            overrides[key] = value
    for key in ("overwrite", "skip_count"):
        if isinstance(transcode_raw.get(key), bool):
            overrides[key] = transcode_raw[key]
    if isinstance(transcode_raw.get("digest_algorithm"), str):
        overrides["digest_algorithm"] = transcode_raw["digest_algorithm"].lower()

    settings.transcode = settings.transcode.with_overrides(**overrides)
    return settings


__all__ = ["MAX_CONCURRENCY", "SUPPORTED_DIGESTS", "Settings", "TranscodeConfig", "load_settings"]
