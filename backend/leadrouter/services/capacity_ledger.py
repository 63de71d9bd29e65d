# backend/leadrouter/services/capacity_ledger.py
"""
Capacity Ledger - per-location, per-day lead counters

- Reads never create rows (a missing row reads as zero usage)
- Writes are a single additive statement, so concurrent assignments to the
  same (location, day) never overwrite each other's counter
- Counters are floored at zero on decrement

The ledger does not commit; callers own the transaction so ledger movement
commits or rolls back together with the lead / routing decision rows.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy import case, cast, func, select, update, Float
from sqlalchemy.ext.asyncio import AsyncSession

from leadrouter.config import settings
from leadrouter.models import Location, LocationCapacity

logger = logging.getLogger(__name__)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class Utilization:
    """Ledger view for one (location, day)."""
    location_id: object
    capacity_date: date
    current: int
    max: int
    rate: float

    def to_dict(self) -> Dict:
        return {
            "location_id": str(self.location_id),
            "date": self.capacity_date.isoformat(),
            "current": self.current,
            "max": self.max,
            "rate": self.rate,
        }


def utilization_rate(current: int, maximum: int) -> float:
    if not maximum or maximum <= 0:
        # No capacity configured: any usage means full
        return 1.0 if current > 0 else 0.0
    return current / maximum


class CapacityLedger:
    """Reads and atomically adjusts location capacity counters."""

    def __init__(self, db: AsyncSession, today: Callable[[], date] = utc_today):
        self.db = db
        self.today = today

    # ========================================================================
    # READS
    # ========================================================================

    async def get_utilization(self, location_id, capacity_date: Optional[date] = None) -> Utilization:
        """Current usage for a location/day; zero-valued when no row exists yet."""
        capacity_date = capacity_date or self.today()

        # Column select: never served from the session identity map
        result = await self.db.execute(
            select(LocationCapacity.current_leads, LocationCapacity.max_capacity).where(
                LocationCapacity.location_id == location_id,
                LocationCapacity.capacity_date == capacity_date,
            )
        )
        entry = result.one_or_none()

        if entry is not None:
            return Utilization(
                location_id=location_id,
                capacity_date=capacity_date,
                current=entry.current_leads,
                max=entry.max_capacity,
                rate=utilization_rate(entry.current_leads, entry.max_capacity),
            )

        location = await self.db.get(Location, location_id)
        max_capacity = self._configured_capacity(location)
        return Utilization(
            location_id=location_id,
            capacity_date=capacity_date,
            current=0,
            max=max_capacity,
            rate=0.0,
        )

    async def utilization_for(
        self,
        locations: Iterable[Location],
        capacity_date: Optional[date] = None,
    ) -> Dict[object, Utilization]:
        """Batch read for many locations in one query (used by candidate selection)."""
        capacity_date = capacity_date or self.today()
        locations = list(locations)
        if not locations:
            return {}

        result = await self.db.execute(
            select(
                LocationCapacity.location_id,
                LocationCapacity.current_leads,
                LocationCapacity.max_capacity,
            ).where(
                LocationCapacity.capacity_date == capacity_date,
                LocationCapacity.location_id.in_([loc.id for loc in locations]),
            )
        )
        rows = result.all()
        by_location = {row.location_id: row for row in rows}

        usage = {}
        for location in locations:
            row = by_location.get(location.id)
            if row is not None:
                current, maximum = row.current_leads, row.max_capacity
            else:
                current, maximum = 0, self._configured_capacity(location)
            usage[location.id] = Utilization(
                location_id=location.id,
                capacity_date=capacity_date,
                current=current,
                max=maximum,
                rate=utilization_rate(current, maximum),
            )
        return usage

    # ========================================================================
    # WRITES
    # ========================================================================

    async def increment(
        self,
        location_id,
        capacity_date: Optional[date] = None,
        delta: int = 1,
        max_capacity: Optional[int] = None,
    ) -> Utilization:
        """
        Create-or-update the (location, day) counter by `delta`.

        current = max(0, current + delta), evaluated inside the database.
        `max_capacity` only seeds a row created by this call.
        """
        capacity_date = capacity_date or self.today()
        if max_capacity is None:
            max_capacity = self._configured_capacity(await self.db.get(Location, location_id))

        dialect = self.db.bind.dialect.name
        if dialect in ("postgresql", "sqlite"):
            current, maximum = await self._upsert(location_id, capacity_date, delta, max_capacity, dialect)
        else:
            current, maximum = await self._locked_update(location_id, capacity_date, delta, max_capacity)

        logger.debug(
            f"Capacity for location {location_id} on {capacity_date}: "
            f"{'+' if delta > 0 else ''}{delta} -> {current}/{maximum}"
        )
        return Utilization(
            location_id=location_id,
            capacity_date=capacity_date,
            current=current,
            max=maximum,
            rate=utilization_rate(current, maximum),
        )

    async def _upsert(self, location_id, capacity_date, delta, max_capacity, dialect):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert

        table = LocationCapacity.__table__
        now = datetime.now(timezone.utc)
        initial = max(0, delta)

        new_count = case(
            (table.c.current_leads + delta < 0, 0),
            else_=table.c.current_leads + delta,
        )
        new_rate = case(
            (table.c.max_capacity > 0, cast(new_count, Float) / table.c.max_capacity),
            (new_count > 0, 1.0),
            else_=0.0,
        )

        stmt = insert(table).values(
            id=uuid.uuid4(),
            location_id=location_id,
            capacity_date=capacity_date,
            current_leads=initial,
            max_capacity=max_capacity,
            utilization_rate=utilization_rate(initial, max_capacity),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.location_id, table.c.capacity_date],
            set_={
                "current_leads": new_count,
                "utilization_rate": new_rate,
                "updated_at": now,
            },
        ).returning(table.c.current_leads, table.c.max_capacity)

        result = await self.db.execute(stmt)
        row = result.one()
        return row.current_leads, row.max_capacity

    async def _locked_update(self, location_id, capacity_date, delta, max_capacity):
        """Row-lock fallback for dialects without ON CONFLICT."""
        result = await self.db.execute(
            select(LocationCapacity)
            .where(
                LocationCapacity.location_id == location_id,
                LocationCapacity.capacity_date == capacity_date,
            )
            .with_for_update()
        )
        entry = result.scalar_one_or_none()

        if entry is None:
            initial = max(0, delta)
            entry = LocationCapacity(
                location_id=location_id,
                capacity_date=capacity_date,
                current_leads=initial,
                max_capacity=max_capacity,
                utilization_rate=utilization_rate(initial, max_capacity),
            )
            self.db.add(entry)
            await self.db.flush()
            return entry.current_leads, entry.max_capacity

        await self.db.execute(
            update(LocationCapacity)
            .where(LocationCapacity.id == entry.id)
            .values(current_leads=func.greatest(LocationCapacity.current_leads + delta, 0))
        )
        await self.db.refresh(entry)
        entry.utilization_rate = utilization_rate(entry.current_leads, entry.max_capacity)
        await self.db.flush()
        return entry.current_leads, entry.max_capacity

    @staticmethod
    def _configured_capacity(location: Optional[Location]) -> int:
        if location is None or location.max_daily_capacity is None:
            return settings.DEFAULT_DAILY_CAPACITY
        return int(location.max_daily_capacity)
