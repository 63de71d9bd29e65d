"""
Lead Routing Routes

Thin HTTP layer over the routing services. Collaborators (geocoder, CRM sink,
alert sink) come from dependency providers so they can be overridden in tests.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from functools import lru_cache
from typing import List
from uuid import UUID
import logging

from leadrouter.database import get_db
from leadrouter.exceptions import (
    AssignmentError,
    InvalidLocationError,
    LeadNotFoundError,
    RoutingExhaustedError,
)
from leadrouter.models import Lead, Location, RoutingDecision
from leadrouter.schemas.routing import (
    BatchAssignmentRequest,
    LeadAssignmentRequest,
    LocationResponse,
    ReassignmentRequest,
    RoutingDecisionResponse,
    UtilizationResponse,
)
from leadrouter.services.capacity_ledger import CapacityLedger
from leadrouter.services.crm_client import create_crm_sink
from leadrouter.services.geocoder import create_geocoder
from leadrouter.services.notification import NotificationService
from leadrouter.services.reassignment import ReassignmentService
from leadrouter.services.routing_service import LeadRoutingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/routing", tags=["Routing"])


# ============================================================================
# DEPENDENCIES
# ============================================================================

@lru_cache
def get_geocoder():
    return create_geocoder()


@lru_cache
def get_crm_sink():
    # One sink per process so its token cache is shared across requests
    return create_crm_sink()


@lru_cache
def get_alert_sink():
    return NotificationService.from_settings()


def get_routing_service(
    db: AsyncSession = Depends(get_db),
    geocoder=Depends(get_geocoder),
    crm_sink=Depends(get_crm_sink),
    alert_sink=Depends(get_alert_sink),
) -> LeadRoutingService:
    return LeadRoutingService(db, geocoder=geocoder, crm_sink=crm_sink, alert_sink=alert_sink)


def get_reassignment_service(
    db: AsyncSession = Depends(get_db),
    crm_sink=Depends(get_crm_sink),
) -> ReassignmentService:
    return ReassignmentService(db, crm_sink=crm_sink)


def exhausted_response(error: RoutingExhaustedError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Complete routing failure",
            "originalError": str(error.original_error),
            "fallbackError": str(error.fallback_error),
            "requiresImmediateAttention": True,
        },
    )


# ============================================================================
# ASSIGNMENT
# ============================================================================

@router.post("/assign")
async def assign_lead(
    request: LeadAssignmentRequest,
    service: LeadRoutingService = Depends(get_routing_service),
):
    """Route a single lead."""
    try:
        result = await service.assign_lead(request)
    except RoutingExhaustedError as e:
        return exhausted_response(e)

    return {"success": True, "result": result.to_dict()}


@router.post("/assign/batch")
async def assign_leads(
    request: BatchAssignmentRequest,
    service: LeadRoutingService = Depends(get_routing_service),
):
    """Route a batch of leads; per-item failures are reported with their index."""
    return await service.assign_leads(request.leads)


@router.post("/leads/{lead_id}/reassign")
async def reassign_lead(
    lead_id: UUID,
    request: ReassignmentRequest,
    service: ReassignmentService = Depends(get_reassignment_service),
):
    try:
        result = await service.reassign(lead_id, request.new_location_id, request.reason)
    except LeadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidLocationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AssignmentError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "result": result}


# ============================================================================
# READS
# ============================================================================

@router.get("/locations", response_model=List[LocationResponse])
async def list_locations(db: AsyncSession = Depends(get_db)):
    """Active locations, oldest first."""
    result = await db.execute(
        select(Location).where(Location.active.is_(True)).order_by(Location.created_at)
    )
    return result.scalars().all()


@router.get("/locations/{location_id}/utilization", response_model=UtilizationResponse)
async def location_utilization(location_id: UUID, db: AsyncSession = Depends(get_db)):
    """Today's ledger view for a location."""
    if await db.get(Location, location_id) is None:
        raise HTTPException(status_code=404, detail=f"Location {location_id} not found")

    usage = await CapacityLedger(db).get_utilization(location_id)
    return UtilizationResponse(
        location_id=usage.location_id,
        capacity_date=usage.capacity_date,
        current=usage.current,
        max=usage.max,
        rate=usage.rate,
    )


@router.get("/leads/{lead_id}/decisions", response_model=List[RoutingDecisionResponse])
async def lead_decisions(lead_id: UUID, db: AsyncSession = Depends(get_db)):
    """Routing decision chain for a lead, oldest first."""
    if await db.get(Lead, lead_id) is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")

    result = await db.execute(
        select(RoutingDecision)
        .where(RoutingDecision.lead_id == lead_id)
        .order_by(RoutingDecision.created_at.asc())
    )
    return result.scalars().all()
