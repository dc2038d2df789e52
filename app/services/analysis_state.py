"""
Per-asset analysis status and its transition table.

Every status write goes through ``advance_status`` which is a single
conditional UPDATE keyed on the status the caller expects to find. Two
workers racing on the same asset cannot both win: the second UPDATE
matches no row and reports ``False``.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Asset, utcnow

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Raised when a transition outside the table is requested."""


class AnalysisStatus(str, Enum):
    UPLOADING = "uploading"
    GENERATING_THUMBNAILS = "generating_thumbnails"
    EXTRACTING_METADATA = "extracting_metadata"
    GENERATING_EMBEDDING = "generating_embedding"
    SCORING = "scoring"
    COMPLETE = "complete"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "AnalysisStatus":
        """Read a stored value; NULL means the upload has not been processed yet."""
        if value is None or value == "":
            return cls.UPLOADING
        return cls(value)

    @property
    def ordinal(self) -> int:
        return _ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self is AnalysisStatus.COMPLETE


_ORDER = list(AnalysisStatus)

TRANSITIONS: Dict[AnalysisStatus, AnalysisStatus] = {
    AnalysisStatus.UPLOADING: AnalysisStatus.GENERATING_THUMBNAILS,
    AnalysisStatus.GENERATING_THUMBNAILS: AnalysisStatus.EXTRACTING_METADATA,
    AnalysisStatus.EXTRACTING_METADATA: AnalysisStatus.GENERATING_EMBEDDING,
    AnalysisStatus.GENERATING_EMBEDDING: AnalysisStatus.SCORING,
    AnalysisStatus.SCORING: AnalysisStatus.COMPLETE,
}


def next_status(status: AnalysisStatus) -> Optional[AnalysisStatus]:
    return TRANSITIONS.get(status)


def validate_transition(expected: AnalysisStatus, target: AnalysisStatus) -> None:
    if TRANSITIONS.get(expected) is not target:
        raise InvalidTransitionError(f"Illegal analysis transition {expected.value} -> {target.value}")


async def lock_asset(session: AsyncSession, asset_id: str) -> Optional[Asset]:
    """Re-read the asset row inside the caller's transaction, locking it.

    Stage writes merge their JSON output onto this copy so keys other
    writers added since the stage started survive the status write.
    """
    res = await session.execute(
        select(Asset)
        .where(Asset.id == asset_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def _status_clause(expected: AnalysisStatus):
    if expected is AnalysisStatus.UPLOADING:
        return or_(Asset.analysis_status == expected.value, Asset.analysis_status.is_(None))
    return Asset.analysis_status == expected.value


async def _conditional_update(
    session: AsyncSession,
    asset_id: str,
    expected: AnalysisStatus,
    target: AnalysisStatus,
    values: Optional[dict],
) -> bool:
    payload = {Asset.analysis_status: target.value, Asset.status_changed_at: utcnow()}
    payload.update(values or {})
    stmt = (
        update(Asset)
        .where(Asset.id == asset_id, _status_clause(expected))
        .values(payload)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def advance_status(
    session: AsyncSession,
    asset_id: str,
    expected: AnalysisStatus,
    target: AnalysisStatus,
    values: Optional[dict] = None,
) -> bool:
    """Move ``asset_id`` from ``expected`` to ``target`` in one conditional write.

    ``values`` maps extra ``Asset`` attributes to the values written by the
    same statement. Returns False when the row was not in ``expected`` (or
    does not exist); nothing changes in that case. The caller owns the transaction.
    """
    validate_transition(expected, target)
    changed = await _conditional_update(session, asset_id, expected, target, values)
    if changed:
        logger.info("[AnalysisState] asset %s: %s -> %s", asset_id, expected.value, target.value)
    return changed


async def force_status(
    session: AsyncSession,
    asset_id: str,
    observed: AnalysisStatus,
    target: AnalysisStatus,
    values: Optional[dict] = None,
) -> bool:
    """Jump from the observed status to any status (reanalysis, recovery repair).

    Still conditional on ``observed`` so a concurrently running stage is
    never overwritten.
    """
    changed = await _conditional_update(session, asset_id, observed, target, values)
    if changed:
        logger.info("[AnalysisState] asset %s forced: %s -> %s", asset_id, observed.value, target.value)
    return changed
