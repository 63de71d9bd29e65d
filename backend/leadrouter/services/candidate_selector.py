# backend/leadrouter/services/candidate_selector.py
"""
Candidate Selector

Flow:
1. Active locations with valid coordinates
2. Attach distance + today's ledger utilization
3. Keep locations inside the routing radius (never widened)
4. Keep locations under the lead-value utilization threshold,
   or degrade to the 3 nearest in-radius locations when none are
5. Rank by suitability (desc), then distance, then utilization
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadrouter.models import Location
from leadrouter.services.capacity_ledger import CapacityLedger
from leadrouter.services.geo import haversine_miles
from leadrouter.services.geocoder import Coordinates
from leadrouter.services.scoring import SuitabilityScorer

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A location under consideration for one lead."""
    location: Location
    distance_miles: float
    current_leads: int
    max_capacity: int
    utilization_rate: float
    suitability_score: float = 0.0
    over_threshold: bool = False

    @property
    def location_id(self):
        return self.location.id

    def snapshot(self) -> Dict[str, Any]:
        """Inputs that produced the decision, stored on the routing log."""
        return {
            "distance": self.distance_miles,
            "suitabilityScore": round(self.suitability_score, 2),
            "capacityUtilization": round(self.utilization_rate, 4),
            "currentLeads": self.current_leads,
            "maxCapacity": self.max_capacity,
            "overThreshold": self.over_threshold,
        }

    def summary(self) -> Dict[str, Any]:
        return {
            "locationId": str(self.location.id),
            "locationName": self.location.name,
            "distance": self.distance_miles,
            "suitabilityScore": round(self.suitability_score, 2),
        }


class CandidateSelector:
    """Find and rank locations that can take a lead."""

    MAX_DISTANCE_MILES = 50.0
    PREMIUM_LEAD_SCORE = 80
    PREMIUM_MAX_UTILIZATION = 0.90
    STANDARD_MAX_UTILIZATION = 0.80
    DEGRADED_CANDIDATE_COUNT = 3

    def __init__(self, db: AsyncSession, ledger: Optional[CapacityLedger] = None):
        self.db = db
        self.ledger = ledger or CapacityLedger(db)

    @classmethod
    def utilization_threshold(cls, lead_score: int) -> float:
        if lead_score >= cls.PREMIUM_LEAD_SCORE:
            return cls.PREMIUM_MAX_UTILIZATION
        return cls.STANDARD_MAX_UTILIZATION

    async def routable_locations(self) -> List[Location]:
        result = await self.db.execute(
            select(Location).where(
                Location.active.is_(True),
                Location.latitude.is_not(None),
                Location.longitude.is_not(None),
            )
        )
        return [loc for loc in result.scalars().all() if loc.is_routable]

    async def select(
        self,
        coordinates: Coordinates,
        lead_score: int,
        source: Optional[str],
        capacity_date: Optional[date] = None,
    ) -> List[Candidate]:
        """Ordered candidates for a lead; empty means "no candidates"."""
        locations = await self.routable_locations()
        if not locations:
            logger.warning("No active locations with valid coordinates")
            return []

        usage = await self.ledger.utilization_for(locations, capacity_date)

        candidates = []
        for location in locations:
            used = usage[location.id]
            candidates.append(Candidate(
                location=location,
                distance_miles=haversine_miles(
                    coordinates.latitude,
                    coordinates.longitude,
                    location.latitude,
                    location.longitude,
                ),
                current_leads=used.current,
                max_capacity=used.max,
                utilization_rate=used.rate,
            ))

        nearby = [c for c in candidates if c.distance_miles <= self.MAX_DISTANCE_MILES]
        if not nearby:
            logger.info(
                f"No locations within {self.MAX_DISTANCE_MILES:g} miles of "
                f"({coordinates.latitude}, {coordinates.longitude})"
            )
            return []

        threshold = self.utilization_threshold(lead_score)
        available = [c for c in nearby if c.utilization_rate < threshold]

        if not available:
            # Every nearby location is over threshold: hand back the closest ones
            available = sorted(nearby, key=lambda c: (c.distance_miles, c.utilization_rate))
            available = available[:self.DEGRADED_CANDIDATE_COUNT]
            for candidate in available:
                candidate.over_threshold = True
            logger.warning(
                f"All {len(nearby)} nearby locations are at or above {threshold:.0%} utilization; "
                f"returning {len(available)} nearest for overflow handling"
            )

        for candidate in available:
            candidate.suitability_score = SuitabilityScorer.score(
                distance_miles=candidate.distance_miles,
                utilization_rate=candidate.utilization_rate,
                lead_score=lead_score,
                source=source,
                facebook_performance_score=candidate.location.facebook_performance_score,
            )

        available.sort(key=lambda c: (-c.suitability_score, c.distance_miles, c.utilization_rate))
        return available
