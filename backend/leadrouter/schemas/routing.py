"""
Pydantic schemas for lead routing requests and responses
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime


class LeadAssignmentRequest(BaseModel):
    """
    Normalized lead-assignment request.

    Accepts camelCase (postalCode) and the upstream snake_case names
    (zip_code, ghl_contact_id, ...).
    """
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    postal_code: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("postalCode", "postal_code", "zipCode", "zip_code"),
    )
    source: str = Field(..., min_length=1, max_length=100)
    external_contact_id: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices(
            "externalContactId", "external_contact_id", "ghlContactId", "ghl_contact_id"
        ),
    )
    lead_score: Optional[int] = Field(
        default=None, ge=1, le=100,
        validation_alias=AliasChoices("leadScore", "lead_score"),
    )

    first_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("firstName", "first_name"))
    last_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("lastName", "last_name"))
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

    utm_source: Optional[str] = Field(default=None, validation_alias=AliasChoices("utmSource", "utm_source"))
    utm_campaign: Optional[str] = Field(default=None, validation_alias=AliasChoices("utmCampaign", "utm_campaign"))
    utm_medium: Optional[str] = Field(default=None, validation_alias=AliasChoices("utmMedium", "utm_medium"))

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('source')
    @classmethod
    def normalize_source(cls, v):
        return v.lower()

    @field_validator('email', 'phone', 'first_name', 'last_name', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('metadata', mode='before')
    @classmethod
    def metadata_default(cls, v):
        return {} if v is None else v

    @property
    def display_name(self) -> str:
        return f"{self.first_name or 'Unknown'} {self.last_name or 'Lead'}"


class BatchAssignmentRequest(BaseModel):
    """Batch of raw lead payloads; each item is validated on its own."""
    leads: List[Dict[str, Any]] = Field(..., min_length=1)

    @field_validator('leads')
    @classmethod
    def validate_batch_size(cls, v):
        if len(v) > 1000:
            raise ValueError('Batch size cannot exceed 1000 leads')
        return v


class ReassignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_location_id: UUID = Field(..., validation_alias=AliasChoices("newLocationId", "new_location_id"))
    reason: Optional[str] = Field(default=None, max_length=500)


class LocationResponse(BaseModel):
    """Location information response."""
    id: UUID
    name: str
    address: Optional[str]
    city: Optional[str]
    state: Optional[str]
    zip_code: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    active: bool
    max_daily_capacity: int
    facebook_performance_score: float
    google_performance_score: float
    website_performance_score: float
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UtilizationResponse(BaseModel):
    location_id: UUID
    capacity_date: date
    current: int
    max: int
    rate: float


class RoutingDecisionResponse(BaseModel):
    """One entry in a lead's routing decision chain."""
    id: UUID
    lead_id: UUID
    assigned_location_id: UUID
    original_location_id: Optional[UUID]
    previous_decision_id: Optional[UUID]
    routing_reason: str
    routing_data: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
