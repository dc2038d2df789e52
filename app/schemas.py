from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class StageResultOut(BaseModel):
    stage: str
    asset_id: str
    outcome: str
    status: Optional[str] = None
    detail: str = ""


class ThumbnailCompletion(BaseModel):
    thumbnails: Dict[str, Union[str, Dict]] = Field(default_factory=dict, description="style -> path or {path, ...}")
    skipped: bool = False
    error: Optional[str] = None


class AiTaggingCompletion(BaseModel):
    tags: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class AssetStatusOut(BaseModel):
    id: str
    analysis_status: str
    thumbnail_status: str
    dominant_hue_group: Optional[str] = None
    dominant_color_bucket: Optional[str] = None


class ComplianceScoreOut(BaseModel):
    asset_id: str
    brand_id: str
    evaluation_status: str
    overall_score: Optional[int] = Field(default=None, ge=0, le=100)
    color_score: Optional[float] = None
    typography_score: Optional[float] = None
    tone_score: Optional[float] = None
    imagery_score: Optional[float] = None
    brand_model_version_id: Optional[int] = None
    breakdown: Dict = Field(default_factory=dict)
    evaluated_at: Optional[datetime] = None


class RecoveryReportOut(BaseModel):
    scanned: int
    repaired: List[str] = []
    redriven: List[str] = []
    escalated: List[str] = []
    pending: List[str] = []
