import numpy as np
import pytest

from app.models import EvaluationStatus
from app.services.brand_models import BrandModelRepository
from app.services.compliance import BrandComplianceService, resolve_weights
from app.services.embedding_store import EmbeddingStore
from app.services.reanalysis import ReanalysisService

IMAGERY_ONLY = {"imagery_weight": 1.0, "color_weight": 0, "tone_weight": 0, "typography_weight": 0}
COLORS = [{"hex": "#1E50C8", "coverage": 0.7}, {"hex": "#FAFAFA", "coverage": 0.3}]


def axis(dim, i):
    v = np.zeros(dim)
    v[i] = 1.0
    return v.tolist()


@pytest.fixture
def analyzed_image(make_asset, session_factory):
    """An image asset with colors, hue group and an embedding."""
    async def _make(brand, vector, **kw):
        kw.setdefault("metadata", {"dominant_colors": COLORS})
        asset = await make_asset(brand=brand, status="scoring", thumbnail_status="completed",
                                 dominant_hue_group="blue", **kw)
        async with session_factory() as s, s.begin():
            await EmbeddingStore(s).upsert(asset.id, vector, model="test")
        return asset
    return _make


async def _score(session_factory, asset, brand):
    async with session_factory() as s, s.begin():
        return await BrandComplianceService().score_asset(s, asset, brand)


async def _row(session_factory, asset, brand):
    async with session_factory() as s:
        return await BrandComplianceService().get_score(s, asset.id, brand.id)


def test_weights_default_and_clamp():
    assert resolve_weights(None) == {"color": 0.3, "typography": 0.2, "tone": 0.3, "imagery": 0.2}
    w = resolve_weights({"imagery_weight": 2, "tone_weight": -1, "color_weight": "x"})
    assert w["imagery"] == 2.0 and w["tone"] == 0.0 and w["color"] == 0.0 and w["typography"] == 0.2


async def test_identical_embedding_scores_exactly_100(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    vec = [0.5] * 64
    await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[vec])
    asset = await analyzed_image(brand, vec)

    result = await _score(session_factory, asset, brand)

    assert result.evaluation_status is EvaluationStatus.EVALUATED
    assert result.overall_score == 100
    row = await _row(session_factory, asset, brand)
    assert row.overall_score == 100 and row.imagery_score == 100.0
    assert row.breakdown_payload["dimensions"]["imagery"]["status"] == "scored"
    assert row.breakdown_payload["dimensions"]["color"]["status"] == "not_applicable"


async def test_centroid_of_divergent_refs_differs(session_factory, make_brand, make_brand_model, analyzed_image):
    asset_vec = axis(8, 0)
    scores = {}
    for label, refs in {"a": [axis(8, 0)], "b": [axis(8, 1)], "ab": [axis(8, 0), axis(8, 1)]}.items():
        brand = await make_brand(name=label)
        await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=refs)
        asset = await analyzed_image(brand, asset_vec)
        scores[label] = (await _score(session_factory, asset, brand)).dimension_score("imagery")

    assert scores["a"] == 100.0
    assert scores["b"] == 50.0
    assert scores["ab"] == pytest.approx(85.36, abs=0.01)


async def test_reference_types_scope_the_centroid(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    await make_brand_model(
        brand, scoring_config=IMAGERY_ONLY, scoring_rules={"imagery_reference_types": ["logo"]},
    )
    async with session_factory() as s, s.begin():
        repo = BrandModelRepository(s)
        await repo.add_visual_reference(brand.id, axis(4, 0), ref_type="logo")
        await repo.add_visual_reference(brand.id, axis(4, 1), ref_type="photography_reference")
    asset = await analyzed_image(brand, axis(4, 0))

    result = await _score(session_factory, asset, brand)
    assert result.dimension_score("imagery") == 100.0


@pytest.mark.parametrize("missing", ["hue", "embedding", "colors"])
async def test_incomplete_image_is_pending(session_factory, make_brand, make_brand_model, make_asset, missing):
    brand = await make_brand()
    await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[[1.0, 0.0]])
    asset = await make_asset(
        brand=brand,
        status="scoring",
        thumbnail_status="completed",
        dominant_hue_group=None if missing == "hue" else "blue",
        metadata={} if missing == "colors" else {"dominant_colors": COLORS},
        title="brand campaign",
    )
    if missing != "embedding":
        async with session_factory() as s, s.begin():
            await EmbeddingStore(s).upsert(asset.id, [1.0, 0.0])

    result = await _score(session_factory, asset, brand)

    assert result.evaluation_status is EvaluationStatus.PENDING_PROCESSING
    assert result.overall_score is None
    row = await _row(session_factory, asset, brand)
    assert row.evaluation_status == "pending_processing"
    assert row.overall_score is None and row.imagery_score is None


async def test_document_bypasses_image_gate(session_factory, make_brand, make_brand_model, make_asset):
    brand = await make_brand()
    await make_brand_model(
        brand,
        scoring_config={"tone_weight": 1.0, "imagery_weight": 1.0},
        scoring_rules={"tone_keywords": ["bold", "friendly"], "banned_keywords": ["cheap"]},
    )
    asset = await make_asset(brand=brand, mime_type="application/pdf", title="Bold friendly brochure")

    result = await _score(session_factory, asset, brand)

    assert result.evaluation_status is EvaluationStatus.EVALUATED
    assert result.overall_score == 100
    assert result.dimensions["imagery"].status == "not_applicable"


async def test_tone_penalizes_banned_keywords(session_factory, make_brand, make_brand_model, make_asset):
    brand = await make_brand()
    await make_brand_model(
        brand,
        scoring_config={"tone_weight": 1.0, "imagery_weight": 0, "color_weight": 0, "typography_weight": 0},
        scoring_rules={"tone_keywords": ["bold", "friendly"], "banned_keywords": ["cheap"]},
    )
    asset = await make_asset(brand=brand, mime_type="application/pdf", title="Bold and cheap",
                             metadata={"tags": [{"name": "sale"}]})

    result = await _score(session_factory, asset, brand)
    assert result.dimension_score("tone") == 20.0
    assert result.overall_score == 20


async def test_weighted_mean_over_scored_dimensions(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    await make_brand_model(
        brand,
        scoring_config={"color_weight": 1.0, "typography_weight": 1.0, "imagery_weight": 2.0, "tone_weight": 0},
        scoring_rules={"allowed_color_palette": ["#1E50C8"], "allowed_fonts": ["Inter"]},
        references=[axis(4, 0)],
    )
    asset = await analyzed_image(brand, axis(4, 0), metadata={"dominant_colors": COLORS, "font": "Helvetica"})

    result = await _score(session_factory, asset, brand)

    assert result.dimension_score("color") == 70.0
    assert result.dimension_score("typography") == 40.0
    assert result.dimension_score("imagery") == 100.0
    # (70 + 40 + 2 * 100) / 4
    assert result.overall_score == 78


async def test_banned_colors_reduce_color_score(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    await make_brand_model(
        brand,
        scoring_config={"color_weight": 1.0, "imagery_weight": 0, "tone_weight": 0, "typography_weight": 0},
        scoring_rules={"allowed_color_palette": [{"hex": "#1E50C8"}], "banned_colors": ["#FFFFFF"]},
    )
    asset = await analyzed_image(brand, axis(4, 0))
    result = await _score(session_factory, asset, brand)
    assert result.dimension_score("color") == 40.0


@pytest.mark.parametrize("setup", ["no_model", "disabled", "other_brand", "nothing_scorable"])
async def test_not_applicable_verdicts(session_factory, make_brand, make_brand_model, analyzed_image, setup):
    brand = await make_brand()
    owner = brand
    if setup == "disabled":
        await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[axis(4, 0)], enabled=False)
    elif setup == "other_brand":
        await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[axis(4, 0)])
        owner = await make_brand(name="Other")
    elif setup == "nothing_scorable":
        await make_brand_model(brand, scoring_config=IMAGERY_ONLY)
    asset = await analyzed_image(owner, axis(4, 0))

    result = await _score(session_factory, asset, brand)

    assert result.evaluation_status is EvaluationStatus.NOT_APPLICABLE
    assert result.overall_score is None
    row = await _row(session_factory, asset, brand)
    assert row.evaluation_status == "not_applicable" and row.overall_score is None


async def test_rescoring_updates_the_same_row(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[axis(4, 0)])
    asset = await analyzed_image(brand, axis(4, 0))

    await _score(session_factory, asset, brand)
    first = await _row(session_factory, asset, brand)
    await _score(session_factory, asset, brand)
    second = await _row(session_factory, asset, brand)

    assert first.id == second.id
    assert second.overall_score == 100


async def test_multi_asset_isolation(session_factory, make_brand, make_brand_model, analyzed_image):
    brand = await make_brand()
    await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[axis(4, 0)])
    a = await analyzed_image(brand, axis(4, 0))
    b = await analyzed_image(brand, axis(4, 1))

    await _score(session_factory, a, brand)
    await _score(session_factory, b, brand)

    row_a, row_b = await _row(session_factory, a, brand), await _row(session_factory, b, brand)
    assert row_a.id != row_b.id
    assert row_a.overall_score == 100
    assert row_b.overall_score == 50


async def test_reanalysis_nulls_previous_score(ctx, session_factory, make_brand, make_brand_model, analyzed_image, load_asset):
    brand = await make_brand()
    await make_brand_model(brand, scoring_config=IMAGERY_ONLY, references=[axis(4, 0)])
    asset = await analyzed_image(brand, axis(4, 0))
    await _score(session_factory, asset, brand)
    assert (await _row(session_factory, asset, brand)).overall_score == 100

    await ReanalysisService(ctx).reset(asset.id)

    row = await _row(session_factory, asset, brand)
    assert row.evaluation_status == "pending_processing"
    assert row.overall_score is None and row.imagery_score is None
    stored = await load_asset(asset.id)
    assert stored.analysis_status == "uploading"
    assert stored.thumbnail_status == "pending"
    assert stored.dominant_hue_group is None
    assert "dominant_colors" not in stored.metadata_

    result = await _score(session_factory, stored, brand)
    assert result.evaluation_status is EvaluationStatus.PENDING_PROCESSING
    assert (await _row(session_factory, asset, brand)).overall_score is None
