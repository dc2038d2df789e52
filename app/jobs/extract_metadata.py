import logging
import os
from typing import Optional

from app.jobs.base import PipelineStageJob
from app.models import Asset, ThumbnailStatus, utcnow
from app.services.analysis_state import AnalysisStatus
from app.services.color_analysis import ColorAnalysisResult
from app.services.metadata_writer import AutomaticMetadataWriter
from app.utils.paths import resolve_storage_path

logger = logging.getLogger(__name__)

DOMINANT_COLOR_LIMIT = 3
DOMINANT_COLOR_MIN_COVERAGE = 0.10


class ThumbnailNotReadyError(RuntimeError):
    """Extraction reached before the renderer produced the thumbnail. Retried."""


class ExtractMetadataStage(PipelineStageJob):
    """extracting_metadata -> generating_embedding.

    Color analysis runs on the rendered thumbnail, never the original, so
    formats the renderer rasterizes (AVIF, SVG, PDF) work the same way.
    """

    name = "ExtractMetadataStage"
    expected = AnalysisStatus.EXTRACTING_METADATA
    target = AnalysisStatus.GENERATING_EMBEDDING
    next_job = "generate_embedding"

    def __init__(self, ctx, writer: Optional[AutomaticMetadataWriter] = None):
        super().__init__(ctx)
        self.writer = writer or AutomaticMetadataWriter()

    async def prepare(self, asset: Asset) -> Optional[ColorAnalysisResult]:
        if not asset.is_image:
            return None
        style = self.ctx.thumbnail_style
        if asset.thumbnail_status != ThumbnailStatus.COMPLETED.value:
            raise ThumbnailNotReadyError(f"Asset {asset.id} thumbnail_status={asset.thumbnail_status}")
        path = resolve_storage_path(asset.thumbnail_path(style))
        if not path or not os.path.exists(path):
            raise ThumbnailNotReadyError(f"Asset {asset.id} has no {style} thumbnail on disk")
        result = await self.ctx.run_blocking(self.ctx.color_service.analyze_path, path)
        logger.info(
            "[%s] asset %s: %d clusters, primary %s (%s)",
            self.name, asset.id, len(result.clusters), result.primary.hex, result.primary.hue_group,
        )
        return result

    def status_values(self, current: Asset, prepared: Optional[ColorAnalysisResult]) -> dict:
        updates = {"metadata_extracted": True, "metadata_extracted_at": utcnow().isoformat()}
        values = {}
        if prepared is not None:
            updates["dominant_colors"] = prepared.dominant_colors(DOMINANT_COLOR_LIMIT, DOMINANT_COLOR_MIN_COVERAGE)
            updates["_color_analysis"] = prepared.to_dict()
            values[Asset.dominant_hue_group] = prepared.primary.hue_group
            values[Asset.dominant_color_bucket] = prepared.primary.bucket_key
        values[Asset.metadata_] = self.writer.merge(current.id, current.metadata_, updates)
        return values
