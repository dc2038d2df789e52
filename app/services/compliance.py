"""
Brand compliance scoring.

Every call produces exactly one verdict for an (asset, brand) pair and
upserts it:

* ``not_applicable``  the brand has no enabled model/active version, the
  asset belongs to another brand, or no dimension could be scored.
* ``pending_processing``  an image asset whose analysis outputs (dominant
  colors, hue group, embedding) are not all present yet. Nothing partial
  is ever scored.
* ``evaluated``  weighted mean of the dimensions that produced a score,
  weights renormalized over those dimensions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import upsert
from app.models import Asset, Brand, BrandComplianceScore, EvaluationStatus, ThumbnailStatus, utcnow
from app.services.analysis_state import AnalysisStatus, advance_status, lock_asset
from app.services.brand_models import BrandModelRepository
from app.services.color_analysis import delta_e, hex_to_rgb, rgb_to_lab
from app.services.embedding_store import EmbeddingStore
from app.utils.vectors import centroid, cosine_similarity, similarity_to_score

logger = logging.getLogger(__name__)

DIMENSIONS = ("color", "typography", "tone", "imagery")
DEFAULT_WEIGHTS = {"color": 0.3, "typography": 0.2, "tone": 0.3, "imagery": 0.2}

SCORED = "scored"
NOT_APPLICABLE = "not_applicable"

TYPOGRAPHY_MATCH_SCORE = 100.0
TYPOGRAPHY_MISS_SCORE = 40.0
BANNED_KEYWORD_PENALTY = 30.0


@dataclass
class DimensionResult:
    status: str
    score: Optional[float] = None
    reason: str = ""
    weight: float = 0.0

    def to_dict(self) -> Dict:
        return {"status": self.status, "score": self.score, "reason": self.reason, "weight": self.weight}


@dataclass
class ComplianceResult:
    evaluation_status: EvaluationStatus
    overall_score: Optional[int] = None
    dimensions: Dict[str, DimensionResult] = field(default_factory=dict)
    brand_model_version_id: Optional[int] = None
    reason: Optional[str] = None

    def dimension_score(self, name: str) -> Optional[float]:
        d = self.dimensions.get(name)
        return d.score if d is not None and d.status == SCORED else None

    def breakdown(self) -> Dict:
        return {"reason": self.reason, "dimensions": {k: v.to_dict() for k, v in self.dimensions.items()}}


def _not_scored(reason: str, weight: float = 0.0) -> DimensionResult:
    return DimensionResult(status=NOT_APPLICABLE, reason=reason, weight=weight)


def resolve_weights(scoring_config: Optional[Dict]) -> Dict[str, float]:
    """``{color_weight, typography_weight, tone_weight, imagery_weight}`` with defaults."""
    cfg = scoring_config or {}
    weights = {}
    for name in DIMENSIONS:
        raw = cfg.get(f"{name}_weight", DEFAULT_WEIGHTS[name])
        try:
            weights[name] = max(0.0, float(raw))
        except (TypeError, ValueError):
            weights[name] = 0.0
    return weights


def completion_criteria(asset: Asset) -> Tuple[bool, str]:
    md = asset.metadata_ or {}
    if asset.is_image and asset.thumbnail_status != ThumbnailStatus.COMPLETED.value:
        return False, f"thumbnail_status={asset.thumbnail_status}"
    if not md.get("ai_tagging_completed"):
        return False, "ai tagging not completed"
    if not md.get("metadata_extracted"):
        return False, "metadata not extracted"
    return True, ""


def _palette_labs(entries: Iterable) -> List[List[float]]:
    labs = []
    for entry in entries or []:
        value = entry.get("hex") if isinstance(entry, dict) else entry
        rgb = hex_to_rgb(value) if isinstance(value, str) else None
        if rgb is not None:
            labs.append(rgb_to_lab(rgb).tolist())
    return labs


def _asset_text(asset: Asset) -> str:
    md = asset.metadata_ or {}
    parts = [asset.title or "", asset.description or ""]
    for tag in md.get("tags") or []:
        parts.append(tag.get("name", "") if isinstance(tag, dict) else str(tag))
    return " ".join(parts).lower()


class BrandComplianceService:
    def __init__(self, palette_delta_e: float = 10.0):
        self.palette_delta_e = palette_delta_e

    # dimensions

    def score_color(self, asset: Asset, rules: Dict, weight: float) -> DimensionResult:
        allowed = _palette_labs(rules.get("allowed_color_palette"))
        banned = _palette_labs(rules.get("banned_colors"))
        if not allowed and not banned:
            return _not_scored("No brand palette configured", weight)
        colors = (asset.metadata_ or {}).get("dominant_colors") or []
        weighted = []
        for c in colors:
            rgb = hex_to_rgb(c.get("hex", "")) if isinstance(c, dict) else None
            if rgb is None:
                continue
            weighted.append((rgb_to_lab(rgb).tolist(), float(c.get("coverage") or 0.0)))
        total = sum(cov for _, cov in weighted)
        if not weighted or total <= 0:
            return _not_scored("No dominant colors", weight)

        def covered(palette: List[List[float]]) -> float:
            return sum(cov for lab, cov in weighted if any(delta_e(lab, p) < self.palette_delta_e for p in palette))

        match_fraction = covered(allowed) / total if allowed else 1.0
        banned_fraction = covered(banned) / total if banned else 0.0
        score = max(0.0, min(100.0, 100.0 * (match_fraction - banned_fraction)))
        return DimensionResult(SCORED, round(score, 2), "Dominant colors against brand palette", weight)

    def score_typography(self, asset: Asset, rules: Dict, weight: float) -> DimensionResult:
        allowed = [f.lower() for f in rules.get("allowed_fonts") or [] if isinstance(f, str) and f]
        if not allowed:
            return _not_scored("No allowed fonts configured", weight)
        md = asset.metadata_ or {}
        raw = md.get("font") or md.get("typography")
        fonts = [raw] if isinstance(raw, str) else [f for f in raw or [] if isinstance(f, str)]
        if not fonts:
            return _not_scored("No typography metadata", weight)
        matched = any(a in f.lower() for f in fonts for a in allowed)
        score = TYPOGRAPHY_MATCH_SCORE if matched else TYPOGRAPHY_MISS_SCORE
        return DimensionResult(SCORED, score, "Font matches brand typography" if matched else "Font not in brand typography", weight)

    def score_tone(self, asset: Asset, rules: Dict, weight: float) -> DimensionResult:
        keywords = [k.lower() for k in rules.get("tone_keywords") or [] if isinstance(k, str) and k.strip()]
        banned = [k.lower() for k in rules.get("banned_keywords") or [] if isinstance(k, str) and k.strip()]
        if not keywords and not banned:
            return _not_scored("No tone keywords configured", weight)
        text = _asset_text(asset)
        if not text.strip():
            return _not_scored("No textual metadata", weight)
        base = 100.0 * sum(1 for k in keywords if k in text) / len(keywords) if keywords else 100.0
        hits = sum(1 for k in banned if k in text)
        score = max(0.0, min(100.0, base - BANNED_KEYWORD_PENALTY * hits))
        return DimensionResult(SCORED, round(score, 2), "Tone keywords in title, description and tags", weight)

    async def score_imagery(self, session: AsyncSession, asset: Asset, brand: Brand, rules: Dict, weight: float) -> DimensionResult:
        emb = await EmbeddingStore(session).get(asset.id)
        if emb is None or not emb.embedding_vector:
            return _not_scored("No asset embedding", weight)
        refs = await BrandModelRepository(session).list_reference_vectors(brand.id, rules.get("imagery_reference_types"))
        if not refs:
            return _not_scored("No brand visual references", weight)
        try:
            sim = cosine_similarity(emb.embedding_vector, centroid(refs))
        except ValueError as e:
            logger.warning("[BrandComplianceService] asset %s imagery skipped: %s", asset.id, e)
            return _not_scored(f"Reference vectors unusable: {e}", weight)
        return DimensionResult(SCORED, similarity_to_score(sim), "Visual similarity to brand centroid", weight)

    # verdict

    async def evaluate(self, session: AsyncSession, asset: Asset, brand: Brand) -> ComplianceResult:
        """Compute the verdict without writing it."""
        if asset.brand_id is not None and asset.brand_id != brand.id:
            return ComplianceResult(EvaluationStatus.NOT_APPLICABLE, reason="Asset belongs to another brand")

        version = await BrandModelRepository(session).get_active_version(brand.id)
        if version is None:
            return ComplianceResult(EvaluationStatus.NOT_APPLICABLE, reason="No enabled brand model with an active version")

        if asset.is_image:
            missing = []
            if not (asset.metadata_ or {}).get("dominant_colors"):
                missing.append("dominant_colors")
            if not asset.dominant_hue_group:
                missing.append("dominant_hue_group")
            if await EmbeddingStore(session).get(asset.id) is None:
                missing.append("embedding")
            if missing:
                return ComplianceResult(
                    EvaluationStatus.PENDING_PROCESSING,
                    brand_model_version_id=version.id,
                    reason=f"Analysis incomplete: missing {', '.join(missing)}",
                )

        payload = version.model_payload or {}
        rules = payload.get("scoring_rules") or {}
        weights = resolve_weights(payload.get("scoring_config"))

        dims: Dict[str, DimensionResult] = {}
        for name in DIMENSIONS:
            w = weights[name]
            if w <= 0:
                dims[name] = _not_scored("Weight is zero", w)
            elif name == "imagery":
                dims[name] = await self.score_imagery(session, asset, brand, rules, w)
            else:
                dims[name] = getattr(self, f"score_{name}")(asset, rules, w)

        scored = {k: d for k, d in dims.items() if d.status == SCORED}
        if not scored:
            return ComplianceResult(
                EvaluationStatus.NOT_APPLICABLE, dimensions=dims, brand_model_version_id=version.id,
                reason="No dimension could be scored",
            )
        total_weight = sum(d.weight for d in scored.values())
        overall = sum(d.score * d.weight for d in scored.values()) / total_weight
        return ComplianceResult(
            EvaluationStatus.EVALUATED,
            overall_score=max(0, min(100, int(round(overall)))),
            dimensions=dims,
            brand_model_version_id=version.id,
        )

    async def score_asset(self, session: AsyncSession, asset: Asset, brand: Brand) -> ComplianceResult:
        result = await self.evaluate(session, asset, brand)
        values = {
            "asset_id": asset.id,
            "brand_id": brand.id,
            "evaluation_status": result.evaluation_status.value,
            "overall_score": result.overall_score,
            "color_score": result.dimension_score("color"),
            "typography_score": result.dimension_score("typography"),
            "tone_score": result.dimension_score("tone"),
            "imagery_score": result.dimension_score("imagery"),
            "breakdown_payload": result.breakdown(),
            "brand_model_version_id": result.brand_model_version_id,
            "evaluated_at": utcnow(),
        }
        await session.execute(upsert(session, BrandComplianceScore, values, index_elements=["asset_id", "brand_id"]))
        logger.info(
            "[BrandComplianceService] asset %s brand %s: %s (score=%s)",
            asset.id, brand.id, result.evaluation_status.value, result.overall_score,
        )
        return result

    async def score_and_complete(
        self, session: AsyncSession, asset: Asset, brand: Optional[Brand]
    ) -> Tuple[Optional[ComplianceResult], bool]:
        """Score and move ``scoring -> complete`` in the caller's transaction.

        Returns ``(result, completed)``. The asset does not complete while
        its verdict is ``pending_processing`` or the gate criteria are unmet.
        """
        ok, why = completion_criteria(asset)
        if not ok:
            logger.info("[BrandComplianceService] asset %s not ready to complete: %s", asset.id, why)
            return None, False

        result = None
        if brand is not None:
            result = await self.score_asset(session, asset, brand)
            if result.evaluation_status is EvaluationStatus.PENDING_PROCESSING:
                return result, False

        current = await lock_asset(session, asset.id)
        if current is None:
            return result, False
        md = dict(current.metadata_ or {})
        md["pipeline_completed_at"] = utcnow().isoformat()
        completed = await advance_status(
            session, asset.id, AnalysisStatus.SCORING, AnalysisStatus.COMPLETE, {Asset.metadata_: md}
        )
        return result, completed

    async def mark_pending(self, session: AsyncSession, asset_id: str, reason: str = "Reanalysis requested") -> int:
        """Null every score of ``asset_id`` and flip it back to pending_processing."""
        stmt = (
            update(BrandComplianceScore)
            .where(BrandComplianceScore.asset_id == asset_id)
            .values(
                evaluation_status=EvaluationStatus.PENDING_PROCESSING.value,
                overall_score=None,
                color_score=None,
                typography_score=None,
                tone_score=None,
                imagery_score=None,
                breakdown_payload={"reason": reason, "dimensions": {}},
                evaluated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        res = await session.execute(stmt)
        return res.rowcount or 0

    async def get_score(self, session: AsyncSession, asset_id: str, brand_id: str) -> Optional[BrandComplianceScore]:
        res = await session.execute(
            select(BrandComplianceScore).where(
                BrandComplianceScore.asset_id == asset_id, BrandComplianceScore.brand_id == brand_id
            ).execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()
