import logging

from app.jobs.base import PipelineStageJob
from app.models import Asset, ThumbnailStatus
from app.services.analysis_state import AnalysisStatus

logger = logging.getLogger(__name__)


class AssetNotProcessableError(ValueError):
    """The asset row cannot enter the pipeline. Not retried."""

    retryable = False


class ProcessAssetStage(PipelineStageJob):
    """uploading -> generating_thumbnails, then hand off to the renderer."""

    name = "ProcessAssetStage"
    expected = AnalysisStatus.UPLOADING
    target = AnalysisStatus.GENERATING_THUMBNAILS

    async def prepare(self, asset: Asset):
        if not asset.mime_type:
            raise AssetNotProcessableError(f"Asset {asset.id} has no mime type")
        if not (asset.storage_path or asset.original_filename):
            raise AssetNotProcessableError(f"Asset {asset.id} has no stored file")
        return None

    def status_values(self, current: Asset, prepared) -> dict:
        return {Asset.thumbnail_status: ThumbnailStatus.PROCESSING.value}

    async def after_commit(self, asset: Asset, prepared) -> None:
        await self.ctx.renderer.enqueue(asset)
