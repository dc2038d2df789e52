"""
Shared plumbing for pipeline stage jobs.

A stage reads the asset, checks that ``analysis_status`` is the one it
expects, does its work, then writes its output and advances the status in
one transaction. Anything else is a logged no-op.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import Asset
from app.services.analysis_state import AnalysisStatus, advance_status, lock_asset
from app.services.color_analysis import ColorAnalysisService
from app.services.compliance import BrandComplianceService

logger = logging.getLogger(__name__)

ADVANCED = "advanced"
SKIPPED = "skipped"
DEFERRED = "deferred"


class ThumbnailRenderer(Protocol):
    async def enqueue(self, asset: Asset) -> None:
        """Request rendering; completion arrives through ``complete_thumbnails``."""
        ...


class ExternalThumbnailRenderer:
    """Rendering happens in another service that calls back over HTTP."""

    async def enqueue(self, asset: Asset) -> None:
        logger.info("[ThumbnailRenderer] awaiting external render for asset %s (%s)", asset.id, asset.mime_type)


@dataclass
class PipelineContext:
    session_factory: async_sessionmaker[AsyncSession]
    embedding_service: Any = None
    color_service: ColorAnalysisService = field(default_factory=ColorAnalysisService)
    compliance: BrandComplianceService = field(default_factory=BrandComplianceService)
    renderer: ThumbnailRenderer = field(default_factory=ExternalThumbnailRenderer)
    dispatcher: Any = None
    thumbnail_style: str = "medium"
    max_concurrency: int = 4
    executor: Optional[ThreadPoolExecutor] = None

    def __post_init__(self):
        self.semaphore = asyncio.Semaphore(max(1, self.max_concurrency))
        if self.executor is None:
            self.executor = ThreadPoolExecutor(max_workers=max(1, self.max_concurrency))

    async def run_blocking(self, fn: Callable, *args):
        """CPU-bound or blocking I/O work off the event loop."""
        async with self.semaphore:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self.executor, fn, *args)

    async def dispatch(self, job_name: str, asset_id: str) -> None:
        if self.dispatcher is None:
            logger.debug("[PipelineContext] no dispatcher; dropping %s for %s", job_name, asset_id)
            return
        await self.dispatcher.enqueue(job_name, asset_id)


@dataclass
class StageResult:
    stage: str
    asset_id: str
    outcome: str
    status: Optional[str] = None
    detail: str = ""

    @property
    def advanced(self) -> bool:
        return self.outcome == ADVANCED


class _LostRace(Exception):
    """The conditional advance matched no row; roll back this stage's writes."""


class PipelineStageJob:
    name = "stage"
    expected: AnalysisStatus
    target: AnalysisStatus
    next_job: Optional[str] = None

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx

    def precheck(self, asset: Asset) -> Optional[str]:
        """Reason to defer without error, or None to proceed."""
        return None

    async def prepare(self, asset: Asset) -> Any:
        """Stage work that may block on I/O. Runs outside any transaction."""
        return None

    def status_values(self, current: Asset, prepared: Any) -> dict:
        """Columns written with the advance. ``current`` is the row as locked in the write transaction."""
        return {}

    async def persist(self, session: AsyncSession, asset: Asset, prepared: Any) -> str:
        """Write stage output and advance. Return ADVANCED, DEFERRED or raise _LostRace."""
        current = await lock_asset(session, asset.id)
        if current is None or AnalysisStatus.coerce(current.analysis_status) is not self.expected:
            raise _LostRace()
        ok = await advance_status(session, asset.id, self.expected, self.target, self.status_values(current, prepared))
        if not ok:
            raise _LostRace()
        return ADVANCED

    async def after_commit(self, asset: Asset, prepared: Any) -> None:
        if self.next_job:
            await self.ctx.dispatch(self.next_job, asset.id)

    async def load(self, asset_id: str) -> Optional[Asset]:
        async with self.ctx.session_factory() as session:
            return await session.get(Asset, asset_id, populate_existing=True)

    async def handle(self, asset_id: str) -> StageResult:
        asset = await self.load(asset_id)
        if asset is None:
            logger.warning("[%s] asset %s not found; skipping", self.name, asset_id)
            return StageResult(self.name, asset_id, SKIPPED, detail="asset not found")

        observed = AnalysisStatus.coerce(asset.analysis_status)
        if observed is not self.expected:
            logger.warning(
                "[%s] asset %s is %s, expected %s; skipping", self.name, asset_id, observed.value, self.expected.value
            )
            return StageResult(self.name, asset_id, SKIPPED, observed.value, "precondition not met")

        reason = self.precheck(asset)
        if reason:
            logger.info("[%s] asset %s deferred: %s", self.name, asset_id, reason)
            return StageResult(self.name, asset_id, DEFERRED, observed.value, reason)

        prepared = await self.prepare(asset)

        try:
            async with self.ctx.session_factory() as session:
                async with session.begin():
                    outcome = await self.persist(session, asset, prepared)
        except _LostRace:
            logger.warning("[%s] asset %s left %s before commit; discarded", self.name, asset_id, self.expected.value)
            return StageResult(self.name, asset_id, SKIPPED, detail="lost race")

        if outcome != ADVANCED:
            return StageResult(self.name, asset_id, outcome, observed.value)
        await self.after_commit(asset, prepared)
        return StageResult(self.name, asset_id, ADVANCED, self.target.value)
