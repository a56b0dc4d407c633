"""
Domain exceptions - Semantic error types for the trust control plane.

This module defines domain-specific exceptions that communicate
business rule violations without leaking infrastructure details.

Rate-limit and quota exhaustion are NOT exceptions: they are modeled
return values so callers can render a specific message.
"""


class TrustPlaneError(Exception):
    """Base class for trust control plane domain errors."""

    pass


class ValidationError(TrustPlaneError):
    """Missing or malformed input (e.g. empty rejection reason)."""

    pass


class NotFoundError(TrustPlaneError):
    """Unknown user or document."""

    pass


class ConflictError(TrustPlaneError):
    """Operation conflicts with current state (e.g. category already verified)."""

    pass


class DependencyError(TrustPlaneError):
    """Repository or other collaborator failure."""

    pass


class DependencyTimeout(DependencyError):
    """Collaborator call exceeded its deadline; nothing was committed."""

    pass
