"""
Pipeline API Endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.db import get_session
from app.jobs.ai_tagging import complete_ai_tagging, fail_ai_tagging
from app.jobs.base import PipelineContext
from app.jobs.process_asset import AssetNotProcessableError, ProcessAssetStage
from app.jobs.thumbnails import complete_thumbnails, fail_thumbnails
from app.models import Asset, Brand, BrandComplianceScore
from app.schemas import (
    AiTaggingCompletion,
    AssetStatusOut,
    ComplianceScoreOut,
    RecoveryReportOut,
    StageResultOut,
    ThumbnailCompletion,
)
from app.services.reanalysis import AssetNotFoundError, ReanalysisConflictError, ReanalysisService
from app.services.recovery import AutoRecoveryScanner

router = APIRouter(prefix="/api/v1", tags=["pipeline"])


def get_pipeline(request: Request) -> PipelineContext:
    ctx = getattr(request.app.state, "pipeline", None)
    if ctx is None:
        raise HTTPException(status_code=500, detail="Pipeline not initialized")
    return ctx


def _score_out(row: BrandComplianceScore) -> ComplianceScoreOut:
    return ComplianceScoreOut(
        asset_id=row.asset_id,
        brand_id=row.brand_id,
        evaluation_status=row.evaluation_status,
        overall_score=row.overall_score,
        color_score=row.color_score,
        typography_score=row.typography_score,
        tone_score=row.tone_score,
        imagery_score=row.imagery_score,
        brand_model_version_id=row.brand_model_version_id,
        breakdown=row.breakdown_payload or {},
        evaluated_at=row.evaluated_at,
    )


@router.post("/assets/{asset_id}/process", response_model=StageResultOut)
async def process_asset(asset_id: str, ctx: PipelineContext = Depends(get_pipeline)):
    """Upload finished: move the asset into thumbnail generation."""
    try:
        result = await ProcessAssetStage(ctx).handle(asset_id)
    except AssetNotProcessableError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if result.detail == "asset not found":
        raise HTTPException(status_code=404, detail="Asset not found")
    return StageResultOut(**result.__dict__)


@router.post("/assets/{asset_id}/thumbnails/complete", response_model=StageResultOut)
async def thumbnails_complete(asset_id: str, body: ThumbnailCompletion, ctx: PipelineContext = Depends(get_pipeline)):
    """Renderer callback."""
    if body.error:
        recorded = await fail_thumbnails(ctx, asset_id, body.error)
        return StageResultOut(stage="CompleteThumbnailsStage", asset_id=asset_id,
                              outcome="failed" if recorded else "skipped", detail=body.error)
    result = await complete_thumbnails(ctx, asset_id, body.thumbnails, skipped=body.skipped)
    return StageResultOut(**result.__dict__)


@router.post("/assets/{asset_id}/ai-tagging/complete", response_model=StageResultOut)
async def ai_tagging_complete(asset_id: str, body: AiTaggingCompletion, ctx: PipelineContext = Depends(get_pipeline)):
    """Tagging service callback."""
    if body.error:
        result = await fail_ai_tagging(ctx, asset_id, body.error)
    else:
        result = await complete_ai_tagging(ctx, asset_id, body.tags)
    if result.detail == "asset not found":
        raise HTTPException(status_code=404, detail="Asset not found")
    return StageResultOut(**result.__dict__)


@router.post("/assets/{asset_id}/reanalyze", response_model=AssetStatusOut)
async def reanalyze(asset_id: str, ctx: PipelineContext = Depends(get_pipeline)):
    try:
        asset = await ReanalysisService(ctx).reset(asset_id)
    except AssetNotFoundError:
        raise HTTPException(status_code=404, detail="Asset not found")
    except ReanalysisConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return AssetStatusOut(
        id=asset.id,
        analysis_status=asset.analysis_status or "uploading",
        thumbnail_status=asset.thumbnail_status,
        dominant_hue_group=asset.dominant_hue_group,
        dominant_color_bucket=asset.dominant_color_bucket,
    )


@router.post("/assets/{asset_id}/compliance/{brand_id}", response_model=ComplianceScoreOut)
async def score_now(asset_id: str, brand_id: str, ctx: PipelineContext = Depends(get_pipeline),
                    session: AsyncSession = Depends(get_session)):
    async with session.begin():
        asset = await session.get(Asset, asset_id)
        brand = await session.get(Brand, brand_id)
        if asset is None or brand is None:
            raise HTTPException(status_code=404, detail="Asset or brand not found")
        await ctx.compliance.score_asset(session, asset, brand)
        row = await ctx.compliance.get_score(session, asset_id, brand_id)
    return _score_out(row)


@router.get("/assets/{asset_id}/compliance/{brand_id}", response_model=ComplianceScoreOut)
async def get_score(asset_id: str, brand_id: str, ctx: PipelineContext = Depends(get_pipeline),
                    session: AsyncSession = Depends(get_session)):
    row = await ctx.compliance.get_score(session, asset_id, brand_id)
    if row is None:
        raise HTTPException(status_code=404, detail="No compliance score for this asset and brand")
    return _score_out(row)


@router.post("/recovery/scan", response_model=RecoveryReportOut)
async def recovery_scan(ctx: PipelineContext = Depends(get_pipeline)):
    settings = get_settings()
    scanner = AutoRecoveryScanner(
        ctx,
        timeout_minutes=settings.STUCK_ASSET_TIMEOUT_MINUTES,
        severity=settings.RECOVERY_INCIDENT_SEVERITY,
        limit=settings.RECOVERY_SCAN_LIMIT,
    )
    report = await scanner.scan()
    return RecoveryReportOut(**report.to_dict())
