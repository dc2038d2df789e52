"""
Brand model repository.

A brand has at most one ``BrandModel``; its versions are append-only and the
one referenced by ``active_version_id`` drives live scoring.
"""
import logging
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import BrandModel, BrandModelVersion, BrandVisualReference
from app.utils.vectors import as_vector

logger = logging.getLogger(__name__)


class BrandModelRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_model(self, brand_id: str) -> Optional[BrandModel]:
        res = await self.session.execute(select(BrandModel).where(BrandModel.brand_id == brand_id))
        return res.scalar_one_or_none()

    async def get_or_initialize_model(self, brand_id: str) -> BrandModel:
        existing = await self.get_model(brand_id)
        if existing is not None:
            return existing
        model = BrandModel(brand_id=brand_id, is_enabled=False)
        self.session.add(model)
        await self.session.flush()
        logger.info("[BrandModelRepository] initialized model for brand %s", brand_id)
        return model

    async def create_version(self, brand_id: str, payload: Dict, source_type: str = "manual") -> BrandModelVersion:
        model = await self.get_or_initialize_model(brand_id)
        res = await self.session.execute(
            select(func.max(BrandModelVersion.version_number)).where(BrandModelVersion.brand_model_id == model.id)
        )
        next_number = (res.scalar() or 0) + 1
        version = BrandModelVersion(
            brand_model_id=model.id,
            version_number=next_number,
            source_type=source_type,
            model_payload=dict(payload or {}),
        )
        self.session.add(version)
        await self.session.flush()
        logger.info("[BrandModelRepository] brand %s: created version %d", brand_id, next_number)
        return version

    async def activate_version(self, brand_id: str, version_id: int, enable: bool = True) -> BrandModel:
        model = await self.get_or_initialize_model(brand_id)
        version = await self.session.get(BrandModelVersion, version_id)
        if version is None or version.brand_model_id != model.id:
            raise LookupError(f"Version {version_id} does not belong to brand {brand_id}")
        model.active_version_id = version.id
        if enable:
            model.is_enabled = True
        await self.session.flush()
        return model

    async def get_active_version(self, brand_id: str) -> Optional[BrandModelVersion]:
        """Active version of an enabled model, or None."""
        model = await self.get_model(brand_id)
        if model is None or not model.is_enabled or model.active_version_id is None:
            return None
        version = await self.session.get(BrandModelVersion, model.active_version_id)
        if version is None or version.brand_model_id != model.id:
            return None
        return version

    async def add_visual_reference(
        self,
        brand_id: str,
        vector: Sequence[float],
        ref_type: str = BrandVisualReference.TYPE_LOGO,
        asset_id: Optional[str] = None,
    ) -> BrandVisualReference:
        ref = BrandVisualReference(
            brand_id=brand_id,
            asset_id=asset_id,
            type=ref_type,
            embedding_vector=as_vector(vector).tolist(),
        )
        self.session.add(ref)
        await self.session.flush()
        return ref

    async def list_reference_vectors(self, brand_id: str, types: Optional[Sequence[str]] = None) -> List[List[float]]:
        q = select(BrandVisualReference.embedding_vector).where(BrandVisualReference.brand_id == brand_id)
        if types:
            q = q.where(BrandVisualReference.type.in_(list(types)))
        res = await self.session.execute(q.order_by(BrandVisualReference.id))
        return [list(v) for v in res.scalars().all() if v]
