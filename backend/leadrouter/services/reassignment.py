# backend/leadrouter/services/reassignment.py
"""Move an assigned lead to another location."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadrouter.exceptions import AssignmentError, InvalidLocationError, LeadNotFoundError
from leadrouter.models import Lead, Location, RoutingDecision, RoutingReason
from leadrouter.services.capacity_ledger import CapacityLedger
from leadrouter.services.crm_client import build_contact_update, create_crm_sink
from leadrouter.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)


async def latest_decision(db: AsyncSession, lead_id) -> Optional[RoutingDecision]:
    result = await db.execute(
        select(RoutingDecision)
        .where(RoutingDecision.lead_id == lead_id)
        .order_by(RoutingDecision.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class ReassignmentService:
    """
    Reassigns a lead in one transaction:
    - lead.assigned_location_id -> new location, previous kept in backup_location_id
    - new RoutingDecision chained to the previous one
    - today's ledger: previous location -1, new location +1
    """

    def __init__(self, db: AsyncSession, ledger: Optional[CapacityLedger] = None, crm_sink=None):
        self.db = db
        self.ledger = ledger or CapacityLedger(db)
        self.crm_sink = crm_sink if crm_sink is not None else create_crm_sink()

    async def reassign(self, lead_id, new_location_id, reason: Optional[str] = None) -> Dict[str, Any]:
        lead = await self.db.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")

        new_location = await self.db.get(Location, new_location_id)
        if new_location is None or not new_location.active:
            raise InvalidLocationError(f"Invalid or inactive location: {new_location_id}")

        previous_location_id = lead.assigned_location_id
        if previous_location_id == new_location.id:
            raise InvalidLocationError(f"Lead {lead_id} is already assigned to location {new_location_id}")

        previous_decision = await latest_decision(self.db, lead.id)

        try:
            lead.backup_location_id = previous_location_id
            lead.assigned_location_id = new_location.id

            decision = RoutingDecision(
                lead_id=lead.id,
                assigned_location_id=new_location.id,
                original_location_id=previous_location_id,
                previous_decision_id=previous_decision.id if previous_decision else None,
                routing_reason=RoutingReason.MANUAL_REASSIGNMENT.value,
                routing_data={
                    "reassignment": True,
                    "previousLocationId": str(previous_location_id) if previous_location_id else None,
                    "reason": reason,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            self.db.add(decision)
            await self.db.flush()

            if previous_location_id is not None:
                await self.ledger.increment(previous_location_id, delta=-1)
            await self.ledger.increment(new_location.id, delta=1, max_capacity=new_location.max_daily_capacity)

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Reassignment of lead {lead_id} rolled back: {e}")
            raise AssignmentError(f"Failed to reassign lead {lead_id}: {e}") from e

        logger.info(
            f"Lead {lead.id} reassigned from {previous_location_id} to {new_location.id}"
            + (f": {reason}" if reason else "")
        )

        crm_updated = await run_best_effort(
            "crm_contact_update",
            self.crm_sink.dispatch(build_contact_update(
                lead.external_contact_id, new_location, RoutingReason.MANUAL_REASSIGNMENT.value, None
            )),
            lead.external_contact_id,
        )

        return {
            "leadId": str(lead.id),
            "previousLocationId": str(previous_location_id) if previous_location_id else None,
            "newLocationId": str(new_location.id),
            "routingDecisionId": str(decision.id),
            "crmUpdated": crm_updated,
        }
