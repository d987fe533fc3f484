"""WebP re-encoding of raster tiles."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from mbtiles_compress.config import TranscodeConfig
from mbtiles_compress.errors import TranscodeError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "codec"})

TARGET_FORMAT = "webp"


@dataclass(frozen=True)
class WebpOptions:
    """Encoder settings shared by every tile of a run."""

    quality: int = 75
    alpha_quality: int = 100
    method: int = 4

    @classmethod
    def from_config(cls, config: TranscodeConfig) -> "WebpOptions":
        return cls(quality=config.quality, alpha_quality=config.alpha_quality, method=config.method)


def _normalize_mode(image: Image.Image) -> Image.Image:
    """Return an RGB or RGBA view of ``image``, keeping transparency when present."""

    if image.mode in ("RGB", "RGBA"):
        return image
    if image.has_transparency_data:
        return image.convert("RGBA")
    return image.convert("RGB")


def transcode_tile(data: bytes, options: WebpOptions) -> bytes:
    """Decode ``data`` with Pillow and return it re-encoded as WebP."""

    with Image.open(io.BytesIO(data)) as source:
        source.load()
        image = _normalize_mode(source)
        out = io.BytesIO()
        image.save(
            out,
            format="WEBP",
            quality=options.quality,
            alpha_quality=options.alpha_quality,
            method=options.method,
        )
    return out.getvalue()


def transcode_or_fail(tile_id: str, data: bytes, options: WebpOptions) -> bytes:
    """Transcode a tile, converting any decoder or encoder failure into :class:`TranscodeError`."""

    if not data:
        raise TranscodeError(tile_id, "empty tile data")
    try:
        return transcode_tile(data, options)
    except UnidentifiedImageError:
        raise TranscodeError(tile_id, "unrecognized image data") from None
    except (OSError, ValueError, SyntaxError) as exc:
        # Pillow reports truncated or corrupt payloads through these types.
        LOGGER.debug("tile_decode_error", extra={"tile_id": tile_id, "error": str(exc)})
        raise TranscodeError(tile_id, str(exc) or type(exc).__name__) from exc


__all__ = ["TARGET_FORMAT", "WebpOptions", "transcode_or_fail", "transcode_tile"]
