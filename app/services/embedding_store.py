import logging
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import upsert
from app.models import AssetEmbedding, utcnow
from app.utils.vectors import l2_normalize

logger = logging.getLogger(__name__)


class EmbeddingStore:
    """One normalized vector per asset, keyed by ``asset_id``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, asset_id: str) -> Optional[AssetEmbedding]:
        q = select(AssetEmbedding).where(AssetEmbedding.asset_id == asset_id).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def upsert(self, asset_id: str, vector: List[float], model: Optional[str] = None) -> List[float]:
        """Normalize and store ``vector``; returns the stored values."""
        normalized = l2_normalize(vector)
        stmt = upsert(
            self.session,
            AssetEmbedding,
            {"asset_id": asset_id, "embedding_vector": normalized, "model": model, "created_at": utcnow()},
            index_elements=["asset_id"],
        )
        await self.session.execute(stmt)
        logger.info("[EmbeddingStore] stored %d-dim vector for asset %s (%s)", len(normalized), asset_id, model)
        return normalized

    async def delete(self, asset_id: str) -> int:
        res = await self.session.execute(delete(AssetEmbedding).where(AssetEmbedding.asset_id == asset_id))
        return res.rowcount or 0
