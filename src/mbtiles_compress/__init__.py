"""Re-encode MBTiles raster archives as WebP with content-addressed deduplication."""

from mbtiles_compress.config import Settings, TranscodeConfig, load_settings
from mbtiles_compress.pipeline import CompressionPipeline, PipelineState, RunSummary

__version__ = "0.1.0"

__all__ = ["CompressionPipeline", "PipelineState", "RunSummary", "Settings", "TranscodeConfig", "load_settings"]
