"""
Incident numbering.

Two formats are supported:
- daily:    BI-FAIL-20250114-003
- facility: BI-1A2B3C4D-1736870400000-003

The sequence is derived from the count of incidents the facility recorded
today. Count-then-format races under concurrent creation, so the generated
number is probed against existing rows and the (facility_id, incident_number)
unique constraint rejects whatever still slips through.
"""

from datetime import datetime, time, timezone
from typing import Literal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Incident

NumberStyle = Literal["daily", "facility"]

MAX_PROBES = 50


def format_daily_number(sequence: int, now: datetime) -> str:
    return f"BI-FAIL-{now:%Y%m%d}-{sequence:03d}"


def format_facility_number(facility_id: UUID, sequence: int, now: datetime) -> str:
    prefix = facility_id.hex[:8].upper()
    timestamp = int(now.timestamp() * 1000)
    return f"BI-{prefix}-{timestamp}-{sequence % 1000:03d}"


def format_incident_number(
    style: NumberStyle,
    facility_id: UUID,
    todays_count: int,
    now: datetime,
) -> str:
    """Pure formatter: the next number given how many incidents exist today."""
    sequence = todays_count + 1
    if style == "facility":
        return format_facility_number(facility_id, sequence, now)
    return format_daily_number(sequence, now)


class IncidentNumbering:
    """Generates facility-scoped incident numbers."""

    def __init__(self, session: AsyncSession, style: NumberStyle = "daily"):
        self.session = session
        self.style = style

    async def next_number(self, facility_id: UUID, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        count = await self._count_today(facility_id, now)

        for offset in range(MAX_PROBES):
            candidate = format_incident_number(self.style, facility_id, count + offset, now)
            if not await self._exists(facility_id, candidate):
                return candidate

        # Fall through to the unique constraint
        return format_incident_number(self.style, facility_id, count + MAX_PROBES, now)

    async def _count_today(self, facility_id: UUID, now: datetime) -> int:
        start_of_day = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        result = await self.session.execute(
            select(func.count(Incident.id)).where(
                Incident.facility_id == facility_id,
                Incident.created_at >= start_of_day,
            )
        )
        return result.scalar_one()

    async def _exists(self, facility_id: UUID, incident_number: str) -> bool:
        result = await self.session.execute(
            select(Incident.id).where(
                Incident.facility_id == facility_id,
                Incident.incident_number == incident_number,
            )
        )
        return result.first() is not None
