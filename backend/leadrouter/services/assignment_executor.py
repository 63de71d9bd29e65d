# backend/leadrouter/services/assignment_executor.py
"""
Assignment Executor

One assignment = one transaction:
    Lead row + RoutingDecision row + capacity ledger increment
Any failure rolls all three back and raises AssignmentError.

After the commit, CRM write-back (contact fields, then pipeline/automation/tags)
runs as best-effort side effects; their failure never touches the assignment.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from leadrouter.exceptions import AssignmentError
from leadrouter.models import Lead, LeadStatus, Location, RoutingDecision, RoutingReason
from leadrouter.schemas.routing import LeadAssignmentRequest
from leadrouter.services.capacity_ledger import CapacityLedger
from leadrouter.services.crm_client import build_contact_update, build_location_automation, create_crm_sink
from leadrouter.services.scoring import LeadScoringService
from leadrouter.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentRecord:
    lead_id: Any
    location_id: Any
    reason: RoutingReason
    decision_id: Any = None
    side_effects: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leadId": str(self.lead_id),
            "locationId": str(self.location_id),
            "reason": self.reason.value,
            "routingDecisionId": str(self.decision_id) if self.decision_id else None,
        }


class AssignmentExecutor:
    """Persists a routed lead atomically, then emits CRM instructions."""

    def __init__(self, db: AsyncSession, ledger: Optional[CapacityLedger] = None, crm_sink=None):
        self.db = db
        self.ledger = ledger or CapacityLedger(db)
        self.crm_sink = crm_sink if crm_sink is not None else create_crm_sink()

    async def execute(
        self,
        request: LeadAssignmentRequest,
        location: Location,
        reason: RoutingReason,
        routing_data: Optional[Dict[str, Any]] = None,
        distance_miles: Optional[float] = None,
        lead_score: Optional[int] = None,
        original_location_id=None,
    ) -> AssignmentRecord:
        if lead_score is None:
            lead_score = request.lead_score or LeadScoringService.estimate_lead_score(
                request.source, request.email, request.phone, request.utm_campaign
            )

        # Rollback expires loaded instances; keep the id for error reporting
        location_id = location.id

        try:
            lead = Lead(
                first_name=request.first_name or "",
                last_name=request.last_name or "",
                email=request.email or "",
                phone=request.phone or "",
                zip_code=request.postal_code,
                source=request.source,
                utm_source=request.utm_source or request.source,
                utm_campaign=request.utm_campaign or "",
                utm_medium=request.utm_medium or "",
                lead_score=lead_score,
                external_contact_id=request.external_contact_id,
                assigned_location_id=location_id,
                status=LeadStatus.NEW.value,
                meta=dict(request.metadata),
            )
            lead.transition_to(LeadStatus.ASSIGNED)
            self.db.add(lead)
            await self.db.flush()

            decision = RoutingDecision(
                lead_id=lead.id,
                assigned_location_id=location_id,
                original_location_id=original_location_id,
                routing_reason=reason.value,
                routing_data=routing_data or {},
            )
            self.db.add(decision)
            await self.db.flush()

            await self.ledger.increment(location_id, max_capacity=location.max_daily_capacity)

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Assignment to location {location_id} rolled back: {e}")
            raise AssignmentError(f"Failed to assign lead to location {location_id}: {e}") from e

        logger.info(
            f"Lead {lead.id} assigned to {location.name} ({location.id}), reason={reason.value}"
        )

        side_effects = await self._write_back(request.external_contact_id, location, reason, distance_miles)

        return AssignmentRecord(
            lead_id=lead.id,
            location_id=location.id,
            reason=reason,
            decision_id=decision.id,
            side_effects=side_effects,
        )

    async def _write_back(self, contact_id: str, location: Location, reason: RoutingReason, distance_miles) -> Dict[str, bool]:
        contact_update = await run_best_effort(
            "crm_contact_update",
            self.crm_sink.dispatch(build_contact_update(contact_id, location, reason.value, distance_miles)),
            contact_id,
        )
        automation = await run_best_effort(
            "crm_location_automation",
            self.crm_sink.dispatch(build_location_automation(contact_id, location)),
            contact_id,
        )
        return {"crm_contact_update": contact_update, "crm_location_automation": automation}
