"""
API v1 routes.

Defines REST endpoints for the trust and eligibility control plane.
Routes are plain ``def`` functions so FastAPI runs them in its threadpool;
the store calls underneath are blocking I/O.
"""

import secrets
from math import ceil

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from trustplane.api.dependencies import (
    get_contact_policies,
    get_eligibility_service,
    get_ledger,
    get_quota_engine,
    get_rate_limiter,
    get_upload_policy,
)
from trustplane.api.models import (
    CategoryProgress,
    DocumentStatusResponse,
    DocumentSubmitRequest,
    DocumentSubmitResponse,
    ErrorResponse,
    PaymentEvent,
    PostEligibilityResponse,
    QuotaStatusResponse,
    RejectRequest,
    ReviewResponse,
    SweepResponse,
    TrustDecisionResponse,
    VerificationProgressResponse,
)
from trustplane.config.settings import Settings, get_settings
from trustplane.domain.eligibility import EligibilityService
from trustplane.domain.exceptions import (
    ConflictError,
    DependencyTimeout,
    NotFoundError,
    TrustPlaneError,
    ValidationError,
)
from trustplane.domain.ports import Action, Category, DocumentPayload, ReviewDecision
from trustplane.domain.quota import QuotaEngine, QuotaStatus
from trustplane.domain.rate_limit import RateLimiter, RateLimitPolicy
from trustplane.domain.verification import AggregateState, VerificationLedger

router = APIRouter(tags=["v1"])

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (DependencyTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
)


def _http_error(exc: TrustPlaneError) -> HTTPException:
    """Map a domain error onto an HTTP status; anything else is a dependency failure."""
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            detail = "Not found" if code == status.HTTP_404_NOT_FOUND else str(exc)
            return HTTPException(status_code=code, detail=detail)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service temporarily unavailable"
    )


def _review_response(state: AggregateState) -> ReviewResponse:
    return ReviewResponse(
        user_id=state.user_id,
        category=state.category,
        category_verified=state.category_verified,
        is_fully_verified=state.is_fully_verified,
    )


def _too_many_attempts(policy: RateLimitPolicy, what: str) -> HTTPException:
    minutes = ceil(policy.window.total_seconds() / 60)
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=f"Too many {what} attempts. Please wait {minutes} minutes before trying again.",
    )


def _quota_response(quota_status: QuotaStatus) -> QuotaStatusResponse:
    return QuotaStatusResponse(
        current_tier=quota_status.tier,
        is_subscription_active=quota_status.is_subscription_active,
        remaining_posts=quota_status.remaining_posts,
        needs_resubscribe=quota_status.needs_resubscribe,
        reason=quota_status.reason,
        max_posts=quota_status.max_posts,
        period_end=quota_status.period_end,
    )


@router.get(
    "/users/{user_id}/verification",
    response_model=VerificationProgressResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    summary="Verification progress",
)
def verification_progress(
    user_id: str, ledger: VerificationLedger = Depends(get_ledger)
) -> VerificationProgressResponse:
    try:
        progress = ledger.get_progress(user_id)
    except TrustPlaneError as e:
        raise _http_error(e) from None

    return VerificationProgressResponse(
        verifications=[
            CategoryProgress(type=category, completed=done)
            for category, done in progress.per_category.items()
        ],
        completed_count=progress.completed_count,
        total_count=progress.total_count,
        progress_percentage=progress.progress_percentage,
        is_fully_verified=progress.is_fully_verified,
        all_complete=progress.completed_count == progress.total_count,
    )


@router.get(
    "/users/{user_id}/documents/{category}",
    response_model=DocumentStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    summary="Latest document status for a category",
)
def document_status(
    user_id: str, category: Category, ledger: VerificationLedger = Depends(get_ledger)
) -> DocumentStatusResponse:
    try:
        document = ledger.get_document_status(user_id, category)
    except TrustPlaneError as e:
        raise _http_error(e) from None

    if document is None:
        return DocumentStatusResponse(has_document=False)
    return DocumentStatusResponse(
        has_document=True,
        document_type=document.document_type,
        status=document.status,
        rejection_reason=document.rejection_reason,
        verified_at=document.verified_at,
        created_at=document.created_at,
    )


@router.post(
    "/users/{user_id}/documents",
    response_model=DocumentSubmitResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid document"},
        404: {"model": ErrorResponse, "description": "Unknown user"},
        409: {"model": ErrorResponse, "description": "Category already verified"},
        429: {"model": ErrorResponse, "description": "Too many upload attempts"},
    },
    summary="Submit a verification document",
    description="Upload an ID, facial or address document for manual review. "
    "Replaces any earlier pending or rejected document of the same category. "
    "Each category has its own upload budget.",
)
def submit_document(
    user_id: str,
    request_data: DocumentSubmitRequest,
    eligibility: EligibilityService = Depends(get_eligibility_service),
    limiter: RateLimiter = Depends(get_rate_limiter),
    upload_policy: RateLimitPolicy = Depends(get_upload_policy),
) -> DocumentSubmitResponse:
    category = request_data.document_type.category
    if not limiter.check(upload_policy, f"{category.value}:{user_id}"):
        raise _too_many_attempts(upload_policy, "upload")

    payload = DocumentPayload(
        document_type=request_data.document_type,
        file_reference=request_data.file_reference,
        back_file_reference=request_data.back_file_reference,
        metadata=request_data.metadata,
    )
    try:
        document_id = eligibility.submit_document(user_id, payload)
    except TrustPlaneError as e:
        raise _http_error(e) from None

    return DocumentSubmitResponse(
        message="Document uploaded successfully and is under review",
        document_id=document_id,
        status="PENDING",
    )


@router.post(
    "/documents/{document_id}/approve",
    response_model=ReviewResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown document"}},
    summary="Approve a verification document",
)
def approve_document(
    document_id: str, eligibility: EligibilityService = Depends(get_eligibility_service)
) -> ReviewResponse:
    try:
        state = eligibility.review_document(document_id, ReviewDecision.APPROVE)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _review_response(state)


@router.post(
    "/documents/{document_id}/reject",
    response_model=ReviewResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Rejection reason is required"},
        404: {"model": ErrorResponse, "description": "Unknown document"},
    },
    summary="Reject a verification document",
)
def reject_document(
    document_id: str,
    request_data: RejectRequest,
    eligibility: EligibilityService = Depends(get_eligibility_service),
) -> ReviewResponse:
    try:
        state = eligibility.review_document(
            document_id, ReviewDecision.REJECT, request_data.reason
        )
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _review_response(state)


@router.post(
    "/users/{user_id}/contact/{category}",
    response_model=ReviewResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Not an email or phone category"},
        404: {"model": ErrorResponse, "description": "Unknown user"},
        429: {"model": ErrorResponse, "description": "Too many verification attempts"},
    },
    summary="Record a successful email or phone verification",
    description="Called once the emailed or texted code matched.",
)
def verify_contact(
    user_id: str,
    category: Category,
    ledger: VerificationLedger = Depends(get_ledger),
    limiter: RateLimiter = Depends(get_rate_limiter),
    contact_policies: dict[Category, RateLimitPolicy] = Depends(get_contact_policies),
) -> ReviewResponse:
    policy = contact_policies.get(category)
    if policy is not None and not limiter.check(policy, user_id):
        raise _too_many_attempts(policy, "verification")

    try:
        state = ledger.record_contact_verified(user_id, category)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _review_response(state)


@router.delete(
    "/users/{user_id}/verification/{category}",
    response_model=ReviewResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    summary="Revoke a verified category",
)
def revoke_category(
    user_id: str, category: Category, ledger: VerificationLedger = Depends(get_ledger)
) -> ReviewResponse:
    try:
        state = ledger.revoke_category(user_id, category)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _review_response(state)


@router.get(
    "/users/{user_id}/subscription",
    response_model=QuotaStatusResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    summary="Subscription and quota status",
)
def subscription_status(
    user_id: str, quota: QuotaEngine = Depends(get_quota_engine)
) -> QuotaStatusResponse:
    try:
        quota_status = quota.get_status(user_id)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _quota_response(quota_status)


@router.post(
    "/users/{user_id}/post-eligibility",
    response_model=PostEligibilityResponse,
    responses={
        403: {"model": PostEligibilityResponse, "description": "Posting not allowed"},
        404: {"model": ErrorResponse, "description": "Unknown user"},
    },
    summary="Check whether the user may create a listing",
)
def post_eligibility(
    user_id: str, eligibility: EligibilityService = Depends(get_eligibility_service)
):
    try:
        decision = eligibility.can_create_listing(user_id)
    except TrustPlaneError as e:
        raise _http_error(e) from None

    body = PostEligibilityResponse(
        success=decision.can_post,
        remaining_posts=decision.remaining_posts,
        current_tier=decision.current_tier,
        message=decision.message,
        needs_subscription=not decision.can_post,
    )
    if not decision.can_post:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN, content=body.model_dump(mode="json")
        )
    return body


@router.get(
    "/users/{user_id}/trust/{action}",
    response_model=TrustDecisionResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    summary="Check whether the user is trusted for an action",
)
def trust_decision(
    user_id: str,
    action: Action,
    eligibility: EligibilityService = Depends(get_eligibility_service),
) -> TrustDecisionResponse:
    try:
        assessment = eligibility.assess(user_id, action)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return TrustDecisionResponse(
        action=assessment.action,
        required_trust=assessment.required_trust,
        allowed=assessment.allowed,
        missing_categories=assessment.missing_categories,
    )


@router.post(
    "/users/{user_id}/payments",
    response_model=QuotaStatusResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid tier"},
        404: {"model": ErrorResponse, "description": "Unknown user"},
    },
    summary="Record a successful subscription payment",
)
def record_payment(
    user_id: str, event: PaymentEvent, quota: QuotaEngine = Depends(get_quota_engine)
) -> QuotaStatusResponse:
    try:
        quota_status = quota.record_payment(user_id, event.tier, event.paid_at)
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return _quota_response(quota_status)


@router.post(
    "/subscriptions/sweep",
    response_model=SweepResponse,
    responses={401: {"model": ErrorResponse, "description": "Unauthorized"}},
    summary="Downgrade lapsed subscriptions",
    description="Called by a scheduled job. Requires the X-API-Key header.",
)
def sweep_subscriptions(
    x_api_key: str = Header(default=""),
    settings: Settings = Depends(get_settings),
    quota: QuotaEngine = Depends(get_quota_engine),
) -> SweepResponse:
    expected = settings.cron_api_key
    if not expected or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        downgraded = quota.expire_lapsed_subscriptions()
    except TrustPlaneError as e:
        raise _http_error(e) from None
    return SweepResponse(
        message=f"Updated {downgraded} expired subscriptions", downgraded=downgraded
    )
