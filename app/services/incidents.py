import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Asset, SystemIncident, Ticket, utcnow

logger = logging.getLogger(__name__)

TICKET_SOURCE = "operations_incident"
SEVERITY_TO_PRIORITY = {"critical": "P0", "error": "P1"}
STUCK_ASSET_TITLE = "Asset analysis stalled"


def ticket_priority(severity: str) -> str:
    return SEVERITY_TO_PRIORITY.get(severity, "P2")


class EscalationPolicy:
    """Decides whether an unresolved incident warrants a human-facing ticket."""

    def __init__(self, warning_min_attempts: int = 2):
        self.warning_min_attempts = warning_min_attempts

    def should_create_ticket(self, incident: SystemIncident) -> bool:
        if incident.severity == "info":
            return False
        if incident.severity == "warning":
            return int((incident.metadata_ or {}).get("repair_attempts", 0)) >= self.warning_min_attempts
        return incident.severity in ("error", "critical")


class IncidentService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_open(self, source_type: str, source_id: Optional[str], title: Optional[str] = None) -> Optional[SystemIncident]:
        q = select(SystemIncident).where(
            SystemIncident.source_type == source_type,
            SystemIncident.source_id == source_id,
            SystemIncident.resolved_at.is_(None),
        )
        if title is not None:
            q = q.where(SystemIncident.title == title)
        res = await self.session.execute(q.order_by(SystemIncident.detected_at.desc()).limit(1))
        return res.scalar_one_or_none()

    async def report(
        self,
        source_type: str,
        source_id: Optional[str],
        title: str,
        message: Optional[str] = None,
        severity: str = "error",
        retryable: bool = False,
        tenant_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> SystemIncident:
        """Open an incident, or refresh the open one with the same source and title."""
        incident = await self.find_open(source_type, source_id, title)
        if incident is not None:
            md = dict(incident.metadata_ or {})
            md.update(metadata or {})
            incident.metadata_ = md
            if message:
                incident.message = message
            incident.retryable = retryable
            await self.session.flush()
            return incident

        incident = SystemIncident(
            source_type=source_type,
            source_id=source_id,
            tenant_id=tenant_id,
            severity=severity,
            title=title,
            message=message,
            retryable=retryable,
            metadata_=dict(metadata or {}),
        )
        self.session.add(incident)
        await self.session.flush()
        logger.warning("[IncidentService] %s %s: %s (%s)", source_type, source_id, title, severity)
        return incident

    async def record_attempt(self, incident: SystemIncident) -> int:
        md = dict(incident.metadata_ or {})
        md["repair_attempts"] = int(md.get("repair_attempts", 0)) + 1
        incident.metadata_ = md
        await self.session.flush()
        return md["repair_attempts"]

    async def resolve(self, incident: SystemIncident, auto_resolved: bool = False) -> SystemIncident:
        incident.resolved_at = utcnow()
        incident.auto_resolved = auto_resolved
        if auto_resolved:
            md = dict(incident.metadata_ or {})
            md["auto_recovered"] = True
            incident.metadata_ = md
        await self.session.flush()
        logger.info("[IncidentService] resolved incident %s (auto=%s)", incident.id, auto_resolved)
        return incident

    async def resolve_stuck(self, asset_id: str) -> bool:
        """Auto-resolve the open stalled-asset incident once the asset has moved on."""
        incident = await self.find_open("asset", asset_id, STUCK_ASSET_TITLE)
        if incident is None:
            return False
        await self.resolve(incident, auto_resolved=True)
        return True

    async def find_open_ticket(self, source_type: str, source_id: Optional[str]) -> Optional[Ticket]:
        res = await self.session.execute(
            select(Ticket)
            .where(Ticket.source_type == source_type, Ticket.source_id == source_id, Ticket.status.in_(Ticket.OPEN_STATUSES))
            .order_by(Ticket.created_at.desc())
        )
        for ticket in res.scalars().all():
            if (ticket.metadata_ or {}).get("source") == TICKET_SOURCE:
                return ticket
        return None

    async def create_ticket(self, incident: SystemIncident, asset: Optional[Asset] = None) -> Ticket:
        """Open a ticket for ``incident``; an open ticket for the same source is reused."""
        existing = await self.find_open_ticket(incident.source_type, incident.source_id)
        if existing is not None:
            return existing

        md = {"source": TICKET_SOURCE, "incident_id": incident.id}
        description = incident.message or incident.title
        if asset is not None:
            md.update({
                "asset_id": asset.id,
                "analysis_status": asset.analysis_status or "uploading",
                "thumbnail_status": asset.thumbnail_status,
            })
        ticket = Ticket(
            incident_id=incident.id,
            source_type=incident.source_type,
            source_id=incident.source_id,
            severity=ticket_priority(incident.severity),
            status="open",
            subject=f"[{incident.severity.upper()}] {incident.title}",
            description=description,
            metadata_=md,
        )
        self.session.add(ticket)
        await self.session.flush()
        logger.warning("[IncidentService] opened ticket %s (%s) for incident %s", ticket.id, ticket.severity, incident.id)
        return ticket
