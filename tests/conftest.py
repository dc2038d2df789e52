"""
Shared fixtures: a fresh in-memory database per test, a pipeline context
with mocked external collaborators, and small row factories.
"""
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.pool import StaticPool

from app import db
from app.db import Base
from app.jobs.base import PipelineContext
from app.jobs.queue import JobDispatcher
from app.models import Asset, Brand, ThumbnailStatus
from app.services.brand_models import BrandModelRepository
from app.services.color_analysis import ColorAnalysisResult, ColorCluster, lab_to_rgb, rgb_to_lab
from app.services.compliance import BrandComplianceService


@pytest_asyncio.fixture
async def session_factory():
    factory = db.configure_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield factory
    await db.engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


def three_cluster_result() -> ColorAnalysisResult:
    clusters = []
    for rgb, cov, n in (((30, 80, 200), 0.6, 600), ((250, 250, 250), 0.3, 300), ((20, 20, 20), 0.1, 100)):
        lab = rgb_to_lab(rgb).tolist()
        clusters.append(ColorCluster(lab=lab, rgb=list(lab_to_rgb(lab)), coverage=cov, count=n))
    return ColorAnalysisResult(clusters=clusters, buckets=[c.hue_group for c in clusters], ignored_pixels=0.0)


@pytest.fixture
def embedding_service():
    svc = MagicMock()
    svc.model_name = "test-model"
    svc.embed_asset.return_value = [0.5] * 64
    return svc


@pytest.fixture
def color_service():
    svc = MagicMock()
    svc.analyze_path.return_value = three_cluster_result()
    return svc


@pytest_asyncio.fixture
async def ctx(session_factory, embedding_service, color_service):
    renderer = MagicMock()
    renderer.enqueue = AsyncMock()
    context = PipelineContext(
        session_factory=session_factory,
        embedding_service=embedding_service,
        color_service=color_service,
        compliance=BrandComplianceService(),
        renderer=renderer,
        max_concurrency=2,
    )
    yield context
    context.executor.shutdown(wait=False)


@pytest_asyncio.fixture
async def dispatcher(ctx):
    d = JobDispatcher(ctx, workers=1, max_tries=3, backoff=[0, 0, 0])
    yield d
    await d.stop()


@pytest.fixture
def thumbnail(tmp_path):
    """A real medium thumbnail on disk."""
    path = tmp_path / "medium.png"
    Image.new("RGB", (32, 32), (30, 80, 200)).save(path)
    return str(path)


@pytest.fixture
def make_brand(session_factory):
    async def _make(name: str = "Acme", tenant_id: str = "t1") -> Brand:
        async with session_factory() as s:
            brand = Brand(name=name, tenant_id=tenant_id)
            s.add(brand)
            await s.commit()
            return brand
    return _make


@pytest.fixture
def make_asset(session_factory):
    async def _make(
        brand: Optional[Brand] = None,
        mime_type: str = "image/jpeg",
        status: Optional[str] = None,
        thumbnail_status: str = ThumbnailStatus.PENDING.value,
        metadata: Optional[Dict] = None,
        **kw,
    ) -> Asset:
        async with session_factory() as s:
            asset = Asset(
                brand_id=brand.id if brand else None,
                tenant_id=brand.tenant_id if brand else None,
                mime_type=mime_type,
                storage_path=kw.pop("storage_path", "uploads/original.jpg"),
                analysis_status=status,
                thumbnail_status=thumbnail_status,
                metadata_=dict(metadata or {}),
                **kw,
            )
            s.add(asset)
            await s.commit()
            return asset
    return _make


@pytest.fixture
def make_brand_model(session_factory):
    async def _make(
        brand: Brand,
        scoring_config: Optional[Dict] = None,
        scoring_rules: Optional[Dict] = None,
        references: Optional[List[List[float]]] = None,
        enabled: bool = True,
    ):
        async with session_factory() as s:
            repo = BrandModelRepository(s)
            version = await repo.create_version(
                brand.id, {"scoring_config": scoring_config or {}, "scoring_rules": scoring_rules or {}}
            )
            await repo.activate_version(brand.id, version.id, enable=enabled)
            for vec in references or []:
                await repo.add_visual_reference(brand.id, vec)
            await s.commit()
            return version
    return _make


@pytest.fixture
def load_asset(session_factory):
    async def _load(asset_id: str) -> Asset:
        async with session_factory() as s:
            return await s.get(Asset, asset_id, populate_existing=True)
    return _load
