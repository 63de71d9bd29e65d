# backend/leadrouter/services/crm_client.py
"""
CRM write-back

The routing core never talks to the CRM directly. After an assignment commits it
builds an InstructionSet (what should change on the external contact) and hands
it to a sink:

- CRMClient: executes instructions against the CRM REST API (httpx)
- RecordingInstructionSink: keeps instructions in memory (tests, dry runs)

Access tokens live in an injected TokenCache, one entry per CRM location, with a
single in-flight refresh per key.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

import httpx

from leadrouter.config import settings

logger = logging.getLogger(__name__)


class CRMError(RuntimeError):
    """CRM request or authentication failure."""


# ============================================================================
# INSTRUCTIONS
# ============================================================================

@dataclass(frozen=True)
class UpdateContactFields:
    location_id: str
    location_name: str
    reason: str
    distance_miles: Optional[float] = None

    def custom_fields(self) -> Dict[str, Any]:
        fields = {
            "assigned_location_id": self.location_id,
            "assigned_location_name": self.location_name,
            "routing_reason": self.reason,
        }
        if self.distance_miles is not None:
            fields["distance_miles"] = round(self.distance_miles, 1)
        return fields


@dataclass(frozen=True)
class MoveToPipeline:
    pipeline_id: str
    stage_id: str


@dataclass(frozen=True)
class TriggerAutomation:
    automation_id: str


@dataclass(frozen=True)
class AddTags:
    tags: Tuple[str, ...]


Instruction = Union[UpdateContactFields, MoveToPipeline, TriggerAutomation, AddTags]


@dataclass
class InstructionSet:
    """Instructions for one external contact, executed in order."""
    contact_id: str
    crm_location_id: Optional[str] = None
    instructions: List[Instruction] = field(default_factory=list)

    def add(self, instruction: Instruction) -> "InstructionSet":
        self.instructions.append(instruction)
        return self

    def of_type(self, kind) -> List[Instruction]:
        return [i for i in self.instructions if isinstance(i, kind)]


def sanitize_tag(value: str) -> str:
    """Lowercase, whitespace runs collapsed to underscores."""
    return re.sub(r"\s+", "_", (value or "").strip().lower())


def location_tags(location) -> Tuple[str, ...]:
    tags = ["routed_automatically", f"location_{location.id}"]
    if location.name:
        tags.append(f"location_{sanitize_tag(location.name)}")
    return tuple(tags)


def build_contact_update(contact_id: str, location, reason: str, distance_miles: Optional[float]) -> InstructionSet:
    """Assigned location, reason and distance written onto the contact."""
    return InstructionSet(
        contact_id=contact_id,
        crm_location_id=location.crm_location_id,
        instructions=[
            UpdateContactFields(
                location_id=str(location.id),
                location_name=location.name,
                reason=reason,
                distance_miles=distance_miles,
            )
        ],
    )


def build_location_automation(contact_id: str, location) -> InstructionSet:
    """Pipeline move and automation (when the location defines them) plus routing tags."""
    instruction_set = InstructionSet(contact_id=contact_id, crm_location_id=location.crm_location_id)

    if location.crm_pipeline_id:
        instruction_set.add(MoveToPipeline(
            pipeline_id=location.crm_pipeline_id,
            stage_id=location.crm_initial_stage_id or settings.CRM_DEFAULT_STAGE_ID,
        ))
    if location.crm_automation_id:
        instruction_set.add(TriggerAutomation(automation_id=location.crm_automation_id))

    instruction_set.add(AddTags(tags=location_tags(location)))
    return instruction_set


# ============================================================================
# TOKEN CACHE
# ============================================================================

@dataclass
class CachedToken:
    token: str
    expires_at: float


TokenFetcher = Callable[[str], Awaitable[Tuple[str, float]]]


class TokenCache:
    """
    Per-key access token cache.

    `fetch_token(key)` returns (token, expires_in_seconds). Tokens within
    EXPIRY_BUFFER_SECONDS of expiring are refreshed. Concurrent callers for the
    same key share one refresh; a failed refresh is not cached.
    """

    EXPIRY_BUFFER_SECONDS = 60.0

    def __init__(self, fetch_token: TokenFetcher, clock: Callable[[], float] = time.monotonic):
        self._fetch_token = fetch_token
        self._clock = clock
        self._tokens: Dict[str, CachedToken] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    async def get(self, key: str, force_refresh: bool = False) -> str:
        if force_refresh:
            self.invalidate(key)
        else:
            cached = self._tokens.get(key)
            if cached and cached.expires_at > self._clock() + self.EXPIRY_BUFFER_SECONDS:
                return cached.token

        refresh = self._inflight.get(key)
        if refresh is None:
            refresh = asyncio.ensure_future(self._refresh(key))
            self._inflight[key] = refresh
            refresh.add_done_callback(lambda _: self._inflight.pop(key, None))

        # Shielded: one caller's cancellation must not cancel the shared refresh
        return await asyncio.shield(refresh)

    def invalidate(self, key: str) -> None:
        self._tokens.pop(key, None)

    async def _refresh(self, key: str) -> str:
        token, expires_in = await self._fetch_token(key)
        self._tokens[key] = CachedToken(token=token, expires_at=self._clock() + float(expires_in))
        logger.info(f"Access token refreshed for CRM location {key}")
        return token


# ============================================================================
# SINKS
# ============================================================================

class CRMClient:
    """Executes instruction sets against the CRM REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_tokens: Optional[Mapping[str, str]] = None,
        token_cache: Optional[TokenCache] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.CRM_API_DOMAIN).rstrip("/")
        self.client_id = client_id or settings.CRM_CLIENT_ID
        self.client_secret = client_secret or settings.CRM_CLIENT_SECRET
        self.refresh_tokens: Dict[str, str] = dict(refresh_tokens or {})
        self.token_cache = token_cache or TokenCache(self._fetch_access_token)
        self.timeout = timeout or settings.CRM_TIMEOUT_SECONDS
        self._transport = transport

    async def dispatch(self, instruction_set: InstructionSet) -> List[Dict[str, Any]]:
        """Execute every instruction in order; the first failure raises."""
        contact_id = instruction_set.contact_id
        location_key = instruction_set.crm_location_id
        responses = []

        for instruction in instruction_set.instructions:
            if isinstance(instruction, UpdateContactFields):
                response = await self.update_contact(
                    contact_id, {"customFields": instruction.custom_fields()}, location_key
                )
            elif isinstance(instruction, MoveToPipeline):
                response = await self.update_contact_pipeline(
                    contact_id, instruction.pipeline_id, instruction.stage_id, location_key
                )
            elif isinstance(instruction, TriggerAutomation):
                response = await self.trigger_automation(contact_id, instruction.automation_id, location_key)
            elif isinstance(instruction, AddTags):
                response = await self.add_contact_tags(contact_id, list(instruction.tags), location_key)
            else:
                raise CRMError(f"Unsupported CRM instruction: {instruction!r}")
            responses.append(response)

        return responses

    async def update_contact(self, contact_id: str, data: Dict[str, Any], location_key: Optional[str] = None):
        return await self._request("PUT", f"/contacts/{contact_id}", data, location_key)

    async def update_contact_pipeline(
        self, contact_id: str, pipeline_id: str, stage_id: str, location_key: Optional[str] = None
    ):
        return await self._request(
            "POST",
            f"/contacts/{contact_id}/workflow",
            {"workflowId": pipeline_id, "eventStartStep": stage_id},
            location_key,
        )

    async def trigger_automation(self, contact_id: str, automation_id: str, location_key: Optional[str] = None):
        return await self._request("POST", f"/contacts/{contact_id}/workflow/{automation_id}", {}, location_key)

    async def add_contact_tags(self, contact_id: str, tags: List[str], location_key: Optional[str] = None):
        return await self._request("POST", f"/contacts/{contact_id}/tags", {"tags": tags}, location_key)

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        location_key: Optional[str] = None,
        retried: bool = False,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if location_key:
            token = await self.token_cache.get(location_key)
            headers["Authorization"] = f"Bearer {token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.request(method, f"{self.base_url}{endpoint}", json=data, headers=headers)

        if response.status_code == 401 and location_key and not retried:
            logger.warning(f"CRM rejected token for location {location_key}, refreshing and retrying once")
            self.token_cache.invalidate(location_key)
            return await self._request(method, endpoint, data, location_key, retried=True)

        if response.is_error:
            logger.error(f"CRM request failed: {method} {endpoint} -> {response.status_code}")
            raise CRMError(f"CRM {method} {endpoint} failed with status {response.status_code}")

        logger.debug(f"CRM request successful: {method} {endpoint}")
        return response.json() if response.content else {}

    async def _fetch_access_token(self, location_key: str) -> Tuple[str, float]:
        refresh_token = self.refresh_tokens.get(location_key)
        if not refresh_token:
            raise CRMError(f"No refresh token stored for CRM location {location_key}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/oauth/token",
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )

        if response.is_error:
            logger.error(f"Failed to refresh access token for CRM location {location_key}: {response.status_code}")
            raise CRMError(f"Authentication failed for location {location_key}")

        payload = response.json()
        if payload.get("refresh_token"):
            self.refresh_tokens[location_key] = payload["refresh_token"]
        return payload["access_token"], float(payload.get("expires_in", 3600))


class RecordingInstructionSink:
    """In-memory sink; optionally fails every dispatch with `fail_with`."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.dispatched: List[InstructionSet] = []
        self.fail_with = fail_with

    async def dispatch(self, instruction_set: InstructionSet) -> List[Dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        self.dispatched.append(instruction_set)
        logger.debug(
            f"Recorded {len(instruction_set.instructions)} CRM instructions for contact {instruction_set.contact_id}"
        )
        return []

    def instructions(self, kind=None) -> List[Instruction]:
        result = []
        for instruction_set in self.dispatched:
            result.extend(instruction_set.of_type(kind) if kind else instruction_set.instructions)
        return result


def create_crm_sink():
    """CRMClient when credentials are configured, otherwise a recording (dry-run) sink."""
    if settings.CRM_CLIENT_ID and settings.CRM_CLIENT_SECRET:
        return CRMClient()
    logger.info("CRM credentials not configured; CRM write-back runs in dry-run mode")
    return RecordingInstructionSink()
