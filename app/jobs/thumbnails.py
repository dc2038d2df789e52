"""
Completion signals from the thumbnail renderer.

The renderer reports back once per asset. Success stores the thumbnail
paths and moves ``generating_thumbnails -> extracting_metadata`` in the same
write; failure marks the thumbnail failed and opens an incident.
"""
import logging
from typing import Dict, Optional, Union

from sqlalchemy import update

from app.jobs.base import PipelineContext, PipelineStageJob, StageResult
from app.models import Asset, ThumbnailStatus
from app.services.analysis_state import AnalysisStatus
from app.services.incidents import IncidentService

logger = logging.getLogger(__name__)


def _normalize_thumbnails(thumbnails: Dict[str, Union[str, Dict]]) -> Dict[str, Dict]:
    out = {}
    for style, entry in (thumbnails or {}).items():
        out[style] = {"path": entry} if isinstance(entry, str) else dict(entry)
    return out


class CompleteThumbnailsStage(PipelineStageJob):
    name = "CompleteThumbnailsStage"
    expected = AnalysisStatus.GENERATING_THUMBNAILS
    target = AnalysisStatus.EXTRACTING_METADATA
    next_job = "extract_metadata"

    def __init__(self, ctx: PipelineContext, thumbnails: Dict, skipped: bool = False):
        super().__init__(ctx)
        self.thumbnails = _normalize_thumbnails(thumbnails)
        self.skipped = skipped

    def precheck(self, asset: Asset) -> Optional[str]:
        if not self.skipped and asset.is_image and not self.thumbnails.get(self.ctx.thumbnail_style, {}).get("path"):
            return f"renderer reported no {self.ctx.thumbnail_style} thumbnail"
        return None

    def status_values(self, current: Asset, prepared) -> dict:
        md = dict(current.metadata_ or {})
        thumbs = dict(md.get("thumbnails") or {})
        thumbs.update(self.thumbnails)
        md["thumbnails"] = thumbs
        status = ThumbnailStatus.SKIPPED if self.skipped else ThumbnailStatus.COMPLETED
        return {Asset.thumbnail_status: status.value, Asset.metadata_: md}


async def complete_thumbnails(
    ctx: PipelineContext, asset_id: str, thumbnails: Dict, skipped: bool = False
) -> StageResult:
    return await CompleteThumbnailsStage(ctx, thumbnails, skipped=skipped).handle(asset_id)


async def fail_thumbnails(ctx: PipelineContext, asset_id: str, error: str) -> bool:
    """Mark rendering failed; the asset stays in generating_thumbnails for recovery."""
    async with ctx.session_factory() as session:
        async with session.begin():
            res = await session.execute(
                update(Asset)
                .where(Asset.id == asset_id, Asset.analysis_status == AnalysisStatus.GENERATING_THUMBNAILS.value)
                .values({Asset.thumbnail_status: ThumbnailStatus.FAILED.value})
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                logger.warning("[ThumbnailRenderer] failure for asset %s ignored; not generating thumbnails", asset_id)
                return False
            asset = await session.get(Asset, asset_id)
            await IncidentService(session).report(
                source_type="asset",
                source_id=asset_id,
                title="Thumbnail generation failed",
                message=error,
                severity="error",
                retryable=True,
                tenant_id=asset.tenant_id if asset else None,
                metadata={"stage": "generating_thumbnails", "error": error},
            )
    logger.error("[ThumbnailRenderer] asset %s thumbnail failed: %s", asset_id, error)
    return True
