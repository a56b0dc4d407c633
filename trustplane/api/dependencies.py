"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting domain services
into routes. Services are built once during app lifespan and kept in
app.state.
"""

from fastapi import Request

from trustplane.config.settings import get_settings
from trustplane.domain.eligibility import EligibilityService
from trustplane.domain.ports import Category
from trustplane.domain.quota import QuotaEngine
from trustplane.domain.rate_limit import RateLimiter, RateLimitPolicy
from trustplane.domain.verification import VerificationLedger


def get_ledger(request: Request) -> VerificationLedger:
    return request.app.state.ledger


def get_quota_engine(request: Request) -> QuotaEngine:
    return request.app.state.quota


def get_eligibility_service(request: Request) -> EligibilityService:
    """Facade over the ledger and quota engine stored in app state."""
    return request.app.state.eligibility


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_upload_policy() -> RateLimitPolicy:
    """Rate-limit policy guarding document uploads."""
    return get_settings().rate_limit_policies()["document_upload"]


def get_contact_policies() -> dict[Category, RateLimitPolicy]:
    """Rate-limit policies guarding email and phone code checks."""
    policies = get_settings().rate_limit_policies()
    return {Category.EMAIL: policies["email_code"], Category.PHONE: policies["phone_code"]}
