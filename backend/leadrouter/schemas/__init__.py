"""Pydantic schemas for request/response validation."""

from leadrouter.schemas.routing import (
    BatchAssignmentRequest,
    LeadAssignmentRequest,
    LocationResponse,
    ReassignmentRequest,
    RoutingDecisionResponse,
    UtilizationResponse,
)

__all__ = [
    "BatchAssignmentRequest",
    "LeadAssignmentRequest",
    "LocationResponse",
    "ReassignmentRequest",
    "RoutingDecisionResponse",
    "UtilizationResponse",
]
