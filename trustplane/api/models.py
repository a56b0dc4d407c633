"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
"""

from datetime import datetime
from typing import Any

from pydantic import AwareDatetime, BaseModel, Field

from trustplane.domain.ports import (
    Action,
    Category,
    DocumentStatus,
    DocumentType,
    SubscriptionTier,
    TrustLevel,
)


class CategoryProgress(BaseModel):
    """Completion of one verification category."""

    type: Category
    completed: bool


class VerificationProgressResponse(BaseModel):
    """Response model for verification progress."""

    verifications: list[CategoryProgress]
    completed_count: int
    total_count: int
    progress_percentage: int
    is_fully_verified: bool
    all_complete: bool


class DocumentSubmitRequest(BaseModel):
    """Request model for a verification document upload."""

    document_type: DocumentType
    file_reference: str = Field(..., min_length=1, description="Storage reference of the front image")
    back_file_reference: str | None = Field(
        None, description="Storage reference of the back image (ID documents except passports)"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Structured fields, e.g. the address for address documents"
    )


class DocumentSubmitResponse(BaseModel):
    """Response model for an accepted upload."""

    message: str
    document_id: str
    status: DocumentStatus


class DocumentStatusResponse(BaseModel):
    """Latest document of one category."""

    has_document: bool
    document_type: DocumentType | None = None
    status: DocumentStatus | None = None
    rejection_reason: str | None = None
    verified_at: datetime | None = None
    created_at: datetime | None = None


class RejectRequest(BaseModel):
    """Request model for rejecting a document."""

    reason: str = Field(..., min_length=1, description="Reason shown to the user")


class ReviewResponse(BaseModel):
    """Response model for a change to one category flag."""

    user_id: str
    category: Category
    category_verified: bool
    is_fully_verified: bool


class QuotaStatusResponse(BaseModel):
    """Response model for subscription and quota status."""

    current_tier: SubscriptionTier
    is_subscription_active: bool
    remaining_posts: int
    needs_resubscribe: bool
    reason: str | None = None
    max_posts: int | None = None
    period_end: datetime | None = None


class PostEligibilityResponse(BaseModel):
    """Response model for the posting eligibility check."""

    success: bool
    remaining_posts: int
    current_tier: SubscriptionTier
    message: str | None = None
    needs_subscription: bool = False


class TrustDecisionResponse(BaseModel):
    """Response model for an action trust check."""

    action: Action
    required_trust: TrustLevel
    allowed: bool
    missing_categories: list[Category]


class PaymentEvent(BaseModel):
    """Payment-succeeded event reported by the payment gateway handler."""

    tier: SubscriptionTier
    paid_at: AwareDatetime | None = None


class SweepResponse(BaseModel):
    """Response model for the scheduled subscription sweep."""

    message: str
    downgraded: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
