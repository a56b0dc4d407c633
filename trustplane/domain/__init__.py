"""
Domain layer - Pure decision logic with zero framework imports.

This package contains the trust and eligibility control plane: the rate
limiter, the verification ledger, the quota engine and the eligibility
facade that composes them. It defines its own port interfaces for
infrastructure abstraction, ensuring true hexagonal architecture decoupling.
"""

from .eligibility import ActionAssessment, EligibilityService
from .exceptions import (
    ConflictError,
    DependencyError,
    DependencyTimeout,
    NotFoundError,
    TrustPlaneError,
    ValidationError,
)
from .ports import (
    Action,
    Category,
    DocumentPayload,
    DocumentStatus,
    DocumentType,
    NotificationSink,
    RateLimitStore,
    ReviewDecision,
    SubscriptionStatus,
    SubscriptionTier,
    TrustLevel,
    TrustStore,
)
from .quota import PostEligibility, QuotaEngine, QuotaStatus
from .rate_limit import RateLimiter, RateLimitPolicy
from .verification import AggregateState, VerificationLedger, VerificationProgress

__all__ = [
    "Action",
    "ActionAssessment",
    "AggregateState",
    "Category",
    "ConflictError",
    "DependencyError",
    "DependencyTimeout",
    "DocumentPayload",
    "DocumentStatus",
    "DocumentType",
    "EligibilityService",
    "NotFoundError",
    "NotificationSink",
    "PostEligibility",
    "QuotaEngine",
    "QuotaStatus",
    "RateLimitPolicy",
    "RateLimitStore",
    "RateLimiter",
    "ReviewDecision",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TrustLevel",
    "TrustPlaneError",
    "TrustStore",
    "ValidationError",
    "VerificationLedger",
    "VerificationProgress",
]
