import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.base import ADVANCED, DEFERRED, PipelineStageJob, _LostRace
from app.models import Asset, Brand, EvaluationStatus
from app.services.analysis_state import AnalysisStatus, lock_asset
from app.services.compliance import completion_criteria
from app.services.incidents import IncidentService

logger = logging.getLogger(__name__)


class ScoringGateStage(PipelineStageJob):
    """scoring -> complete once the asset is fully analyzed.

    The compliance row and the status change commit together. A
    ``pending_processing`` verdict is recorded but the asset stays in scoring.
    """

    name = "ScoringGateStage"
    expected = AnalysisStatus.SCORING
    target = AnalysisStatus.COMPLETE

    def precheck(self, asset: Asset) -> Optional[str]:
        ok, why = completion_criteria(asset)
        return None if ok else why

    async def persist(self, session: AsyncSession, asset: Asset, prepared) -> str:
        fresh = await lock_asset(session, asset.id)
        if fresh is None:
            raise _LostRace()
        ok, why = completion_criteria(fresh)
        if not ok:
            logger.info("[%s] asset %s deferred: %s", self.name, asset.id, why)
            return DEFERRED
        brand = await session.get(Brand, fresh.brand_id) if fresh.brand_id else None
        result, completed = await self.ctx.compliance.score_and_complete(session, fresh, brand)
        if completed:
            await IncidentService(session).resolve_stuck(fresh.id)
            return ADVANCED
        if result is not None and result.evaluation_status is EvaluationStatus.PENDING_PROCESSING:
            logger.info("[%s] asset %s scored pending_processing; not completing", self.name, asset.id)
            return DEFERRED
        raise _LostRace()
