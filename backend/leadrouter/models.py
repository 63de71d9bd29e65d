# backend/leadrouter/models.py
"""
SQLAlchemy ORM models for lead routing.

Four durable tables:
1. locations          - service points leads are routed to
2. leads              - routed prospects
3. location_capacity  - per-location, per-day capacity ledger
4. lead_routing_logs  - append-only routing decisions

Types are the portable SQLAlchemy ones (Uuid, JSON) so the same schema runs
on PostgreSQL in production and SQLite in tests.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Float, Text, Date, DateTime, JSON, Uuid,
    ForeignKey, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from enum import Enum
import uuid

from leadrouter.database import Base
from leadrouter.exceptions import LeadStatusTransitionError
from leadrouter.services.geo import is_valid_coordinates


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadStatus(str, Enum):
    NEW = "new"
    ASSIGNED = "assigned"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"


class RoutingReason(str, Enum):
    OPTIMAL_MATCH = "optimal_match"
    CAPACITY_OVERFLOW = "no_capacity_overflow"
    FALLBACK_ROUTING = "fallback_routing"
    MANUAL_REASSIGNMENT = "manual_reassignment"


# One-way progression; LOST is reachable from any non-terminal state
LEAD_STATUS_ORDER = [
    LeadStatus.NEW,
    LeadStatus.ASSIGNED,
    LeadStatus.CONTACTED,
    LeadStatus.QUALIFIED,
    LeadStatus.CONVERTED,
]
TERMINAL_STATUSES = {LeadStatus.CONVERTED, LeadStatus.LOST}


# ============================================================================
# LOCATION
# ============================================================================

class Location(Base):
    """Service point that receives leads."""
    __tablename__ = "locations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    address = Column(Text, nullable=False, default="")
    city = Column(String(120))
    state = Column(String(50))
    zip_code = Column(String(10))
    latitude = Column(Float)
    longitude = Column(Float)
    phone = Column(String(50))
    email = Column(String(255))
    active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String(64), default="America/New_York")

    # Capacity
    max_daily_capacity = Column(Integer, nullable=False, default=100)

    # Per-channel performance scores (0..1), routing tie-breakers
    facebook_performance_score = Column(Float, nullable=False, default=0.0)
    google_performance_score = Column(Float, nullable=False, default=0.0)
    website_performance_score = Column(Float, nullable=False, default=0.0)

    # External CRM references, only used to build write-back instructions
    crm_location_id = Column(String(255))
    crm_pipeline_id = Column(String(255))
    crm_initial_stage_id = Column(String(255))
    crm_automation_id = Column(String(255))

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("max_daily_capacity >= 0", name="chk_location_capacity_non_negative"),
        Index("idx_locations_active_created", "active", "created_at"),
    )

    @property
    def is_routable(self) -> bool:
        """Active and carrying valid coordinates."""
        return bool(self.active) and is_valid_coordinates(self.latitude, self.longitude)

    def __repr__(self):
        return f"<Location(id={self.id}, name='{self.name}', active={self.active})>"


# ============================================================================
# LEAD
# ============================================================================

class Lead(Base):
    """Prospect routed to a location."""
    __tablename__ = "leads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # Contact fields (advisory only, never used in routing)
    first_name = Column(String(255), default="")
    last_name = Column(String(255), default="")
    email = Column(String(255), default="")
    phone = Column(String(50), default="")

    zip_code = Column(String(10), nullable=False)
    source = Column(String(100), nullable=False)
    utm_source = Column(String(255), default="")
    utm_campaign = Column(String(255), default="")
    utm_medium = Column(String(255), default="")

    lead_score = Column(Integer, nullable=False, default=50)
    external_contact_id = Column(String(255), nullable=False, index=True)

    assigned_location_id = Column(Uuid, ForeignKey("locations.id"), index=True)
    backup_location_id = Column(Uuid, ForeignKey("locations.id"))

    status = Column(String(20), nullable=False, default=LeadStatus.NEW.value)
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    # One-way relationships only
    assigned_location = relationship("Location", foreign_keys=[assigned_location_id])
    backup_location = relationship("Location", foreign_keys=[backup_location_id])

    __table_args__ = (
        CheckConstraint("lead_score >= 1 AND lead_score <= 100", name="chk_lead_score_range"),
        CheckConstraint(
            "status IN ('new', 'assigned', 'contacted', 'qualified', 'converted', 'lost')",
            name="chk_lead_status",
        ),
    )

    def transition_to(self, new_status) -> None:
        """Move the lead forward in its lifecycle; regressions are rejected."""
        current = LeadStatus(self.status or LeadStatus.NEW.value)
        target = LeadStatus(new_status)

        if current == target:
            return
        if current in TERMINAL_STATUSES:
            raise LeadStatusTransitionError(f"Lead {self.id} is already {current.value}")
        if target != LeadStatus.LOST and (
            LEAD_STATUS_ORDER.index(target) < LEAD_STATUS_ORDER.index(current)
        ):
            raise LeadStatusTransitionError(
                f"Lead {self.id} cannot move from {current.value} back to {target.value}"
            )

        self.status = target.value

    def __repr__(self):
        return f"<Lead(id={self.id}, zip='{self.zip_code}', location={self.assigned_location_id})>"


# ============================================================================
# CAPACITY LEDGER
# ============================================================================

class LocationCapacity(Base):
    """One capacity counter per (location, calendar day)."""
    __tablename__ = "location_capacity"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    capacity_date = Column(Date, nullable=False)
    current_leads = Column(Integer, nullable=False, default=0)
    max_capacity = Column(Integer, nullable=False, default=100)
    utilization_rate = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("location_id", "capacity_date", name="uq_location_capacity_day"),
        CheckConstraint("current_leads >= 0", name="chk_capacity_current_non_negative"),
    )

    def __repr__(self):
        return (
            f"<LocationCapacity(location={self.location_id}, date={self.capacity_date}, "
            f"{self.current_leads}/{self.max_capacity})>"
        )


# ============================================================================
# ROUTING DECISION LOG
# ============================================================================

class RoutingDecision(Base):
    """Immutable audit record of one routing outcome."""
    __tablename__ = "lead_routing_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False, index=True)
    assigned_location_id = Column(Uuid, ForeignKey("locations.id"), nullable=False)
    original_location_id = Column(Uuid, ForeignKey("locations.id"))
    previous_decision_id = Column(Uuid, ForeignKey("lead_routing_logs.id"))
    routing_reason = Column(String(50), nullable=False)
    routing_data = Column(JSON, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "routing_reason IN ('optimal_match', 'no_capacity_overflow', "
            "'fallback_routing', 'manual_reassignment')",
            name="chk_routing_reason",
        ),
        Index("idx_routing_logs_lead_created", "lead_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<RoutingDecision(lead={self.lead_id}, location={self.assigned_location_id}, "
            f"reason='{self.routing_reason}')>"
        )
