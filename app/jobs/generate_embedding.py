import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.base import ADVANCED, PipelineStageJob, _LostRace
from app.models import Asset
from app.services.analysis_state import AnalysisStatus, advance_status
from app.services.embedding_service import EmbeddingServiceError
from app.services.embedding_store import EmbeddingStore
from app.utils.vectors import l2_normalize

logger = logging.getLogger(__name__)


class GenerateEmbeddingStage(PipelineStageJob):
    """generating_embedding -> scoring. Non-image assets carry no embedding."""

    name = "GenerateEmbeddingStage"
    expected = AnalysisStatus.GENERATING_EMBEDDING
    target = AnalysisStatus.SCORING
    next_job = "scoring_gate"

    async def prepare(self, asset: Asset) -> Optional[List[float]]:
        if not asset.is_image:
            return None
        if self.ctx.embedding_service is None:
            raise EmbeddingServiceError("No embedding service configured")
        raw = await self.ctx.run_blocking(self.ctx.embedding_service.embed_asset, asset)
        try:
            return l2_normalize(raw)
        except (TypeError, ValueError) as e:
            raise EmbeddingServiceError(f"Unusable embedding for asset {asset.id}: {e}") from e

    async def persist(self, session: AsyncSession, asset: Asset, prepared: Optional[List[float]]) -> str:
        if prepared is not None:
            model = getattr(self.ctx.embedding_service, "model_name", None)
            await EmbeddingStore(session).upsert(asset.id, prepared, model=model)
        if not await advance_status(session, asset.id, self.expected, self.target):
            raise _LostRace()
        return ADVANCED
