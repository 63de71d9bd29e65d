"""Routing error taxonomy."""

from typing import Optional


class RoutingError(RuntimeError):
    """Base class for failures raised by the routing core."""


class UnresolvablePostalCodeError(RoutingError):
    """No geocoding tier could resolve the postal code."""

    def __init__(self, postal_code: str):
        super().__init__(f"Invalid zip code: {postal_code}")
        self.postal_code = postal_code


class NoCandidatesError(RoutingError):
    """No routable location survived candidate selection."""

    def __init__(self, message: str = "No locations available within range", coordinates=None):
        super().__init__(message)
        self.coordinates = coordinates


class NoEligibleLocationError(RoutingError):
    """An overflow or fallback location could not be found."""


class AssignmentError(RoutingError):
    """The atomic assignment commit failed and was rolled back."""


class RoutingExhaustedError(RoutingError):
    """Both primary routing and its fallback path failed; nothing was persisted."""

    def __init__(self, original_error: Exception, fallback_error: Exception, postal_code: Optional[str] = None):
        super().__init__(
            f"Complete routing failure: {original_error} (fallback: {fallback_error})"
        )
        self.original_error = original_error
        self.fallback_error = fallback_error
        self.postal_code = postal_code


class LeadNotFoundError(RoutingError):
    """Referenced lead does not exist."""


class InvalidLocationError(RoutingError):
    """Referenced location does not exist or is inactive."""


class LeadStatusTransitionError(ValueError):
    """Lead lifecycle only moves forward."""
