import logging

from app.models import Asset, ThumbnailStatus
from app.services.analysis_state import AnalysisStatus, force_status, lock_asset
from app.services.embedding_store import EmbeddingStore
from app.services.metadata_writer import OVERRIDES_KEY

logger = logging.getLogger(__name__)

DERIVED_KEYS = (
    "thumbnails",
    "dominant_colors",
    "_color_analysis",
    "metadata_extracted",
    "metadata_extracted_at",
    "pipeline_completed_at",
)


class AssetNotFoundError(LookupError):
    pass


class ReanalysisConflictError(RuntimeError):
    """The asset changed status while the reset was being written."""


class ReanalysisService:
    """Operator reset of everything the pipeline derived for an asset."""

    def __init__(self, ctx):
        self.ctx = ctx

    async def reset(self, asset_id: str) -> Asset:
        async with self.ctx.session_factory() as session:
            async with session.begin():
                asset = await lock_asset(session, asset_id)
                if asset is None:
                    raise AssetNotFoundError(asset_id)
                observed = AnalysisStatus.coerce(asset.analysis_status)

                md = dict(asset.metadata_ or {})
                keep = set(md.get(OVERRIDES_KEY) or [])
                for key in DERIVED_KEYS:
                    if key not in keep:
                        md.pop(key, None)

                changed = await force_status(
                    session,
                    asset_id,
                    observed,
                    AnalysisStatus.UPLOADING,
                    {
                        Asset.thumbnail_status: ThumbnailStatus.PENDING.value,
                        Asset.dominant_hue_group: None,
                        Asset.dominant_color_bucket: None,
                        Asset.metadata_: md,
                    },
                )
                if not changed:
                    raise ReanalysisConflictError(f"Asset {asset_id} left {observed.value} during reset")
                await EmbeddingStore(session).delete(asset_id)
                nulled = await self.ctx.compliance.mark_pending(session, asset_id)
            await session.refresh(asset)

        logger.info("[ReanalysisService] asset %s reset from %s; %d score rows nulled", asset_id, observed.value, nulled)
        await self.ctx.dispatch("process_asset", asset_id)
        return asset
