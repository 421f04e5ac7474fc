"""
Domain Exceptions

Every error the ordering core raises derives from TablesideError and
carries the HTTP status and machine-readable code the API renders.
"""

from typing import Optional


class TablesideError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            **({"context": self.detail} if self.detail else {}),
        }


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationError(TablesideError):
    status_code = 400
    code = "validation_error"


class InvalidTableNumber(ValidationError):
    code = "invalid_table_number"


class UnknownCustomization(ValidationError):
    code = "unknown_customization"


# =============================================================================
# LOOKUP
# =============================================================================

class NotFoundError(TablesideError):
    status_code = 404
    code = "not_found"


class SessionNotFound(NotFoundError):
    code = "session_not_found"


class ExpiredSessionError(TablesideError):
    """The session is past expires_at, or was completed or expired."""

    status_code = 410
    code = "session_expired"


# =============================================================================
# STATE
# =============================================================================

class EmptyCartError(TablesideError):
    status_code = 409
    code = "empty_cart"


class InvalidStateTransition(TablesideError):
    status_code = 409
    code = "invalid_state_transition"


class ConcurrencyConflict(TablesideError):
    """Raised when a competing writer holds or changed the rows we need."""

    status_code = 409
    code = "concurrency_conflict"


class OccupancyInvariantViolation(TablesideError):
    """A desk's stored occupancy disagrees with its open orders."""

    status_code = 500
    code = "occupancy_invariant_violation"


class OrderCreationFailed(TablesideError):
    status_code = 500
    code = "order_creation_failed"
