# backend/leadrouter/services/routing_service.py
"""
Lead Routing Service

State machine:
    ROUTING_ATTEMPTED -> ASSIGNED   best candidate committed (optimal_match)
                      -> OVERFLOW   no candidates; overflow location (no_capacity_overflow)
                      -> FALLBACK   geocoding/selection/commit raised; oldest location (fallback_routing)
                      -> FAILED     overflow/fallback path had nowhere to go; RoutingExhaustedError

Overflow and fallback both alert operators and flag the result for review.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leadrouter.exceptions import (
    AssignmentError,
    NoCandidatesError,
    NoEligibleLocationError,
    RoutingExhaustedError,
    UnresolvablePostalCodeError,
)
from leadrouter.models import Location, RoutingReason
from leadrouter.schemas.routing import LeadAssignmentRequest
from leadrouter.services.assignment_executor import AssignmentExecutor, AssignmentRecord
from leadrouter.services.candidate_selector import CandidateSelector
from leadrouter.services.capacity_ledger import CapacityLedger
from leadrouter.services.crm_client import create_crm_sink
from leadrouter.services.geo import haversine_miles, is_valid_coordinates
from leadrouter.services.geocoder import Geocoder, create_geocoder
from leadrouter.services.notification import (
    CAPACITY_OVERFLOW,
    ROUTING_FALLBACK,
    NotificationService,
    RoutingAlert,
)
from leadrouter.services.scoring import LeadScoringService
from leadrouter.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)


class RoutingState(str, Enum):
    ROUTING_ATTEMPTED = "routing_attempted"
    ASSIGNED = "assigned"
    OVERFLOW = "overflow"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass
class RoutingResult:
    state: RoutingState
    location: Location
    assignment: AssignmentRecord
    distance: Optional[float] = None
    capacity_utilization: Optional[float] = None
    requires_review: bool = False
    requires_manual_review: bool = False
    original_error: Optional[str] = None
    degraded_selection: bool = False
    alternatives: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def reason(self) -> RoutingReason:
        return self.assignment.reason

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": True,
            "state": self.state.value,
            "locationId": str(self.location.id),
            "locationName": self.location.name,
            "reason": self.reason.value,
            "distance": self.distance,
            "capacityUtilization": self.capacity_utilization,
            "assignment": self.assignment.to_dict(),
        }
        if self.alternatives:
            data["alternativeLocations"] = self.alternatives
        if self.degraded_selection:
            data["degradedSelection"] = True
        if self.requires_manual_review:
            data["requiresManualReview"] = True
        if self.requires_review:
            data["requiresReview"] = True
            data["originalError"] = self.original_error
        return data


class LeadRoutingService:
    """Routes one lead (or a batch) to a location, with overflow and fallback handling."""

    OVERFLOW_NAME_PATTERNS = ("overflow", "headquarters")
    ALTERNATIVES_IN_DECISION = 2

    def __init__(
        self,
        db: AsyncSession,
        geocoder: Optional[Geocoder] = None,
        ledger: Optional[CapacityLedger] = None,
        crm_sink=None,
        alert_sink=None,
    ):
        self.db = db
        self.geocoder = geocoder or create_geocoder()
        self.ledger = ledger or CapacityLedger(db)
        self.selector = CandidateSelector(db, self.ledger)
        self.executor = AssignmentExecutor(
            db, self.ledger, crm_sink if crm_sink is not None else create_crm_sink()
        )
        self.alert_sink = alert_sink if alert_sink is not None else NotificationService.from_settings()

    # ========================================================================
    # SINGLE LEAD
    # ========================================================================

    async def assign_lead(self, request: LeadAssignmentRequest) -> RoutingResult:
        """
        Route one normalized lead.

        Always returns a RoutingResult unless both primary routing and its
        overflow/fallback path fail, which raises RoutingExhaustedError.
        """
        lead_score = request.lead_score or LeadScoringService.estimate_lead_score(
            request.source, request.email, request.phone, request.utm_campaign
        )
        logger.info(
            f"Routing lead {request.display_name} ({request.external_contact_id}): zip={request.postal_code}, "
            f"source={request.source}, score={lead_score}"
        )

        try:
            return await self._route_optimal(request, lead_score)
        except NoCandidatesError as no_candidates:
            return await self._route_overflow(request, lead_score, no_candidates)
        except Exception as error:
            logger.error(f"Primary routing failed for {request.external_contact_id}: {error}")
            return await self._route_fallback(request, lead_score, error)

    async def _route_optimal(self, request: LeadAssignmentRequest, lead_score: int) -> RoutingResult:
        coordinates = await self.geocoder.resolve(request.postal_code)
        if coordinates is None:
            raise UnresolvablePostalCodeError(request.postal_code)

        candidates = await self.selector.select(coordinates, lead_score, request.source)
        if not candidates:
            raise NoCandidatesError(coordinates=coordinates)

        best = candidates[0]
        alternatives = [c.summary() for c in candidates[1:1 + self.ALTERNATIVES_IN_DECISION]]

        routing_data = {
            **best.snapshot(),
            "leadScore": lead_score,
            "coordinates": coordinates.to_dict(),
            "alternativeLocations": alternatives,
            "degradedSelection": best.over_threshold,
        }

        record = await self.executor.execute(
            request,
            best.location,
            RoutingReason.OPTIMAL_MATCH,
            routing_data=routing_data,
            distance_miles=best.distance_miles,
            lead_score=lead_score,
        )

        if best.over_threshold:
            logger.warning(
                f"Lead {record.lead_id} assigned to over-threshold location {best.location.name} "
                f"({best.utilization_rate:.0%} utilized)"
            )

        return RoutingResult(
            state=RoutingState.ASSIGNED,
            location=best.location,
            assignment=record,
            distance=best.distance_miles,
            capacity_utilization=best.utilization_rate,
            degraded_selection=best.over_threshold,
            alternatives=alternatives,
        )

    # ========================================================================
    # OVERFLOW / FALLBACK
    # ========================================================================

    async def _route_overflow(
        self, request: LeadAssignmentRequest, lead_score: int, no_candidates: NoCandidatesError
    ) -> RoutingResult:
        logger.warning(f"No candidates for zip {request.postal_code}; routing to overflow")

        try:
            location = await self._recover_and_find(self.find_overflow_location)
        except Exception as e:
            raise self._exhausted(request, no_candidates, e) from e
        if location is None:
            raise self._exhausted(
                request, no_candidates, NoEligibleLocationError("No overflow location configured")
            )

        coordinates = no_candidates.coordinates
        distance = None
        if coordinates is not None and is_valid_coordinates(location.latitude, location.longitude):
            distance = haversine_miles(
                coordinates.latitude, coordinates.longitude, location.latitude, location.longitude
            )

        routing_data = {
            "overflow": True,
            "leadScore": lead_score,
            "distance": distance,
            "message": str(no_candidates),
            "coordinates": coordinates.to_dict() if coordinates else None,
        }

        try:
            record = await self.executor.execute(
                request,
                location,
                RoutingReason.CAPACITY_OVERFLOW,
                routing_data=routing_data,
                distance_miles=distance,
                lead_score=lead_score,
            )
        except AssignmentError as e:
            raise self._exhausted(request, no_candidates, e) from e

        await self._alert(CAPACITY_OVERFLOW, record, request)

        return RoutingResult(
            state=RoutingState.OVERFLOW,
            location=location,
            assignment=record,
            distance=distance,
            requires_manual_review=True,
        )

    async def _route_fallback(
        self, request: LeadAssignmentRequest, lead_score: int, original_error: Exception
    ) -> RoutingResult:
        try:
            location = await self._recover_and_find(self.find_default_location)
        except Exception as e:
            raise self._exhausted(request, original_error, e) from e
        if location is None:
            raise self._exhausted(
                request, original_error, NoEligibleLocationError("No active fallback location available")
            )

        routing_data = {
            "fallback": True,
            "leadScore": lead_score,
            "originalError": str(original_error),
            "errorType": type(original_error).__name__,
        }

        try:
            record = await self.executor.execute(
                request,
                location,
                RoutingReason.FALLBACK_ROUTING,
                routing_data=routing_data,
                lead_score=lead_score,
            )
        except AssignmentError as e:
            raise self._exhausted(request, original_error, e) from e

        logger.warning(f"Lead {record.lead_id} routed to fallback location {location.name}: {original_error}")
        await self._alert(ROUTING_FALLBACK, record, request, error=str(original_error))

        return RoutingResult(
            state=RoutingState.FALLBACK,
            location=location,
            assignment=record,
            requires_review=True,
            original_error=str(original_error),
        )

    async def _recover_and_find(self, finder) -> Optional[Location]:
        """Discard whatever the failed primary attempt left in the transaction, then look up a location."""
        await self.db.rollback()
        return await finder()

    async def find_overflow_location(self) -> Optional[Location]:
        """Active location named like an overflow queue, else headquarters; oldest first."""
        for pattern in self.OVERFLOW_NAME_PATTERNS:
            result = await self.db.execute(
                select(Location)
                .where(
                    Location.active.is_(True),
                    func.lower(Location.name).like(f"%{pattern}%"),
                )
                .order_by(Location.created_at.asc(), Location.id)
                .limit(1)
            )
            location = result.scalar_one_or_none()
            if location is not None:
                return location
        return None

    async def find_default_location(self) -> Optional[Location]:
        """Oldest active location."""
        result = await self.db.execute(
            select(Location)
            .where(Location.active.is_(True))
            .order_by(Location.created_at.asc(), Location.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _exhausted(
        self, request: LeadAssignmentRequest, original_error: Exception, fallback_error: Exception
    ) -> RoutingExhaustedError:
        logger.critical(
            f"Complete routing failure for {request.external_contact_id} "
            f"(zip {request.postal_code}): {original_error}; fallback: {fallback_error}"
        )
        return RoutingExhaustedError(original_error, fallback_error, postal_code=request.postal_code)

    async def _alert(
        self, alert_type: str, record: AssignmentRecord, request: LeadAssignmentRequest, error: Optional[str] = None
    ) -> bool:
        alert = RoutingAlert(
            alert_type=alert_type,
            lead_id=str(record.lead_id),
            postal_code=request.postal_code,
            source=request.source,
            error=error,
        )
        return await run_best_effort("routing_alert", self.alert_sink.send(alert), alert_type)

    # ========================================================================
    # BATCH
    # ========================================================================

    async def assign_leads(self, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Route leads one by one, in order.

        A failing item is reported with its index and never stops the rest.
        """
        assignments = []
        errors = []

        for index, item in enumerate(items):
            label = self._batch_label(item)

            try:
                request = LeadAssignmentRequest.model_validate(item)
            except ValidationError as e:
                fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
                errors.append({
                    "index": index,
                    "lead": label,
                    "status": "failed",
                    "error": f"Missing or invalid fields: {', '.join(fields)}",
                })
                continue

            try:
                result = await self.assign_lead(request)
            except Exception as e:
                logger.error(f"Batch item {index} failed: {e}")
                errors.append({"index": index, "lead": label, "status": "failed", "error": str(e)})
                continue

            assignments.append({
                "index": index,
                "lead": label,
                "leadId": str(result.assignment.lead_id),
                "status": "assigned",
                "locationId": str(result.location.id),
                "locationName": result.location.name,
                "reason": result.reason.value,
                "distance": result.distance,
                "result": result.to_dict(),
            })

        total = len(items)
        successful = len(assignments)
        logger.info(f"Lead assignment batch completed: {successful}/{total} successful")

        response = {
            "success": not errors,
            "summary": {
                "total": total,
                "successful": successful,
                "failed": len(errors),
                "successRate": round(successful / total * 100, 2) if total else 0.0,
            },
            "assignments": assignments,
        }
        if errors:
            response["errors"] = errors
        return response

    @staticmethod
    def _batch_label(item: Dict[str, Any]) -> str:
        first = item.get("firstName") or item.get("first_name") or "Unknown"
        last = item.get("lastName") or item.get("last_name") or "Lead"
        return f"{first} {last}"
