"""
Completion signal from the AI tagging collaborator.

Tagging runs beside the pipeline and may report before or after the asset
reaches ``scoring``. The flag and tags are merged onto the locked row; an
asset already waiting in ``scoring`` gets the gate dispatched again.
"""
import logging
from typing import List, Optional

from app.jobs.base import SKIPPED, PipelineContext, StageResult
from app.models import utcnow
from app.services.analysis_state import AnalysisStatus, lock_asset
from app.services.incidents import IncidentService
from app.services.metadata_writer import AutomaticMetadataWriter, MetadataWriteRejectedError

logger = logging.getLogger(__name__)

STAGE = "AiTaggingCompletion"
RECORDED = "recorded"
FAILED = "failed"


async def complete_ai_tagging(
    ctx: PipelineContext,
    asset_id: str,
    tags: Optional[List[str]] = None,
    writer: Optional[AutomaticMetadataWriter] = None,
) -> StageResult:
    writer = writer or AutomaticMetadataWriter()
    async with ctx.session_factory() as session:
        async with session.begin():
            asset = await lock_asset(session, asset_id)
            if asset is None:
                logger.warning("[%s] asset %s not found; skipping", STAGE, asset_id)
                return StageResult(STAGE, asset_id, SKIPPED, detail="asset not found")

            md = writer.merge(
                asset_id,
                asset.metadata_,
                {"ai_tagging_completed": True, "ai_tagging_completed_at": utcnow().isoformat()},
            )
            if tags:
                try:
                    md = writer.merge(asset_id, md, {"tags": list(tags)})
                except MetadataWriteRejectedError:
                    logger.info("[%s] asset %s keeps its manual tags", STAGE, asset_id)
            asset.metadata_ = md
            status = AnalysisStatus.coerce(asset.analysis_status)

    logger.info("[%s] asset %s tagged (%d tags) while %s", STAGE, asset_id, len(tags or []), status.value)
    if status is AnalysisStatus.SCORING:
        await ctx.dispatch("scoring_gate", asset_id)
    return StageResult(STAGE, asset_id, RECORDED, status.value)


async def fail_ai_tagging(ctx: PipelineContext, asset_id: str, error: str) -> StageResult:
    """Record a tagging failure; the asset waits in scoring until tagging succeeds or recovery escalates."""
    async with ctx.session_factory() as session:
        async with session.begin():
            asset = await lock_asset(session, asset_id)
            if asset is None:
                return StageResult(STAGE, asset_id, SKIPPED, detail="asset not found")
            await IncidentService(session).report(
                source_type="asset",
                source_id=asset_id,
                title="AI tagging failed",
                message=error,
                severity="warning",
                retryable=True,
                tenant_id=asset.tenant_id,
                metadata={"stage": "ai_tagging", "error": error},
            )
            status = AnalysisStatus.coerce(asset.analysis_status)
    logger.error("[%s] asset %s tagging failed: %s", STAGE, asset_id, error)
    return StageResult(STAGE, asset_id, FAILED, status.value, error)
