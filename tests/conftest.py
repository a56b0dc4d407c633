"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- A controllable clock
- In-memory stores
- Domain services wired with a mock notification sink
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from trustplane.adapters.ratelimit.memory import InMemoryRateLimitStore
from trustplane.adapters.repository.memory import InMemoryTrustStore
from trustplane.domain.eligibility import EligibilityService
from trustplane.domain.quota import QuotaEngine
from trustplane.domain.rate_limit import RateLimiter
from trustplane.domain.verification import VerificationLedger

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryTrustStore:
    return InMemoryTrustStore()


@pytest.fixture
def notifier() -> Mock:
    return Mock()


@pytest.fixture
def ledger(store: InMemoryTrustStore, notifier: Mock, clock: FakeClock) -> VerificationLedger:
    return VerificationLedger(store=store, notifier=notifier, clock=clock)


@pytest.fixture
def quota(store: InMemoryTrustStore, notifier: Mock, clock: FakeClock) -> QuotaEngine:
    return QuotaEngine(store=store, notifier=notifier, clock=clock)


@pytest.fixture
def eligibility(ledger: VerificationLedger, quota: QuotaEngine) -> EligibilityService:
    return EligibilityService(ledger=ledger, quota=quota)


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(store=InMemoryRateLimitStore(), clock=clock)
