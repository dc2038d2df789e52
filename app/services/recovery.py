"""
Reconciles assets whose pipeline stalled.

An asset is stuck when it is not ``complete`` and its status has not
changed for ``STUCK_ASSET_TIMEOUT_MINUTES``. For each one the scanner works
out the furthest status the stored evidence proves. If that is ahead of
the recorded status, the status is advanced and the matching stage job is
re-driven; otherwise the incident is escalated to a ticket.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import or_, select

from app.jobs.queue import JOB_FOR_STATUS
from app.models import Asset, ThumbnailStatus, utcnow
from app.services.analysis_state import AnalysisStatus, force_status
from app.services.compliance import completion_criteria
from app.services.embedding_store import EmbeddingStore
from app.services.incidents import STUCK_ASSET_TITLE, EscalationPolicy, IncidentService

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    scanned: int = 0
    repaired: List[str] = field(default_factory=list)
    redriven: List[str] = field(default_factory=list)
    escalated: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "repaired": self.repaired,
            "redriven": self.redriven,
            "escalated": self.escalated,
            "pending": self.pending,
        }


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


async def proven_status(session, asset: Asset) -> AnalysisStatus:
    """Furthest status the stored artifacts justify."""
    md = asset.metadata_ or {}
    proven = AnalysisStatus.UPLOADING

    thumbs_done = asset.thumbnail_status in (ThumbnailStatus.COMPLETED.value, ThumbnailStatus.SKIPPED.value)
    if asset.is_image:
        thumbs_done = asset.thumbnail_status == ThumbnailStatus.COMPLETED.value and bool(asset.thumbnail_path())
    if not thumbs_done:
        return proven
    proven = AnalysisStatus.EXTRACTING_METADATA

    extracted = bool(md.get("metadata_extracted")) and bool(md.get("metadata_extracted_at"))
    if asset.is_image:
        extracted = extracted and bool(asset.dominant_hue_group)
    if not extracted:
        return proven
    proven = AnalysisStatus.GENERATING_EMBEDDING

    if asset.is_image and await EmbeddingStore(session).get(asset.id) is None:
        return proven
    proven = AnalysisStatus.SCORING

    if md.get("pipeline_completed_at"):
        proven = AnalysisStatus.COMPLETE
    return proven


class AutoRecoveryScanner:
    def __init__(self, ctx, timeout_minutes: int = 30, severity: str = "error", limit: int = 500,
                 policy: Optional[EscalationPolicy] = None):
        self.ctx = ctx
        self.timeout = timedelta(minutes=timeout_minutes)
        self.severity = severity
        self.limit = limit
        self.policy = policy or EscalationPolicy()

    async def stuck_assets(self, session, now: datetime) -> List[Asset]:
        cutoff = now - self.timeout
        q = (
            select(Asset)
            .where(
                or_(Asset.analysis_status.is_(None), Asset.analysis_status != AnalysisStatus.COMPLETE.value),
                Asset.status_changed_at < cutoff,
            )
            .order_by(Asset.status_changed_at)
            .limit(self.limit)
            .execution_options(populate_existing=True)
        )
        res = await session.execute(q)
        return list(res.scalars().all())

    async def scan(self, now: Optional[datetime] = None) -> RecoveryReport:
        now = _aware(now) or utcnow()
        report = RecoveryReport()
        dispatches = []

        async with self.ctx.session_factory() as session:
            async with session.begin():
                assets = await self.stuck_assets(session, now)
                report.scanned = len(assets)
                for asset in assets:
                    job = await self._reconcile(session, asset, report)
                    if job:
                        dispatches.append((job, asset.id))

        for job, asset_id in dispatches:
            await self.ctx.dispatch(job, asset_id)
        logger.info(
            "[AutoRecoveryScanner] scanned=%d repaired=%d redriven=%d escalated=%d",
            report.scanned, len(report.repaired), len(report.redriven), len(report.escalated),
        )
        return report

    async def _reconcile(self, session, asset: Asset, report: RecoveryReport) -> Optional[str]:
        observed = AnalysisStatus.coerce(asset.analysis_status)
        incidents = IncidentService(session)
        incident = await incidents.report(
            source_type="asset",
            source_id=asset.id,
            title=STUCK_ASSET_TITLE,
            message=f"Asset stuck in {observed.value} since {asset.status_changed_at}",
            severity=self.severity,
            retryable=True,
            tenant_id=asset.tenant_id,
            metadata={"analysis_status": observed.value, "thumbnail_status": asset.thumbnail_status},
        )
        await incidents.record_attempt(incident)

        proven = await proven_status(session, asset)
        if proven.ordinal > observed.ordinal:
            if not await force_status(session, asset.id, observed, proven):
                report.pending.append(asset.id)
                return None
            await incidents.resolve(incident, auto_resolved=True)
            report.repaired.append(asset.id)
            logger.info("[AutoRecoveryScanner] asset %s repaired: %s -> %s", asset.id, observed.value, proven.value)
            return JOB_FOR_STATUS.get(proven.value)

        # Work for the current stage was lost but can simply run again; the
        # incident stays open until the gate completes the asset
        if observed is AnalysisStatus.SCORING and completion_criteria(asset)[0]:
            report.redriven.append(asset.id)
            return JOB_FOR_STATUS[observed.value]

        if self.policy.should_create_ticket(incident):
            await incidents.create_ticket(incident, asset)
            report.escalated.append(asset.id)
        else:
            report.pending.append(asset.id)
        return None


class RecoveryScheduler:
    """Runs ``scanner.scan()`` every ``interval`` seconds until stopped."""

    def __init__(self, scanner: AutoRecoveryScanner, interval: float,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.scanner = scanner
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        if self.interval <= 0:
            logger.info("[RecoveryScheduler] disabled (interval=%s)", self.interval)
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("[RecoveryScheduler] scanning every %.0fs", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            await self._sleep(self.interval)
            try:
                await self.scanner.scan()
            except Exception:
                logger.exception("[RecoveryScheduler] scan failed; retrying next interval")
