"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the value types the domain speaks in and the
interfaces (ports) it requires from infrastructure. Adapters implement
these protocols by structural subtyping.
"""

from collections.abc import Callable, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol


class Category(str, Enum):
    """
    Verification categories contributing to the aggregate flag.

    Declaration order is the canonical progress order.
    """

    EMAIL = "email"
    PHONE = "phone"
    ID = "id"
    FACIAL = "facial"
    ADDRESS = "address"


# Categories verified out-of-band (email link, SMS code) rather than by document review
CONTACT_CATEGORIES = frozenset({Category.EMAIL, Category.PHONE})
DOCUMENT_CATEGORIES = frozenset({Category.ID, Category.FACIAL, Category.ADDRESS})


class DocumentType(str, Enum):
    """Uploadable document variants; several variants share one category."""

    NATIONAL_ID = "national_id"
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    FACIAL_PHOTO = "facial_photo"
    ADDRESS_DOCUMENT = "address_document"
    LEASE_AGREEMENT = "lease_agreement"
    UTILITY_BILL = "utility_bill"
    BANK_STATEMENT = "bank_statement"

    @property
    def category(self) -> Category:
        return _DOCUMENT_CATEGORY[self]


_DOCUMENT_CATEGORY = {
    DocumentType.NATIONAL_ID: Category.ID,
    DocumentType.PASSPORT: Category.ID,
    DocumentType.DRIVERS_LICENSE: Category.ID,
    DocumentType.FACIAL_PHOTO: Category.FACIAL,
    DocumentType.ADDRESS_DOCUMENT: Category.ADDRESS,
    DocumentType.LEASE_AGREEMENT: Category.ADDRESS,
    DocumentType.UTILITY_BILL: Category.ADDRESS,
    DocumentType.BANK_STATEMENT: Category.ADDRESS,
}


class DocumentStatus(str, Enum):
    """
    Review lifecycle of a verification document.

    Transitions:
    - PENDING -> VERIFIED (reviewer approves)
    - PENDING -> REJECTED (reviewer rejects with reason)

    VERIFIED and REJECTED are terminal for a given document; a repeated
    review overwrites but is logged as anomalous. Resubmission creates
    a new PENDING document that supersedes the old one.
    """

    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not DocumentStatus.PENDING


class ReviewDecision(str, Enum):
    """Reviewer decision on a pending document."""

    APPROVE = "approve"
    REJECT = "reject"


class SubscriptionTier(str, Enum):
    """Subscription levels; FREE is the lowest tier."""

    FREE = "FREE"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, Enum):
    """Subscription activity state."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TrustLevel(str, Enum):
    """Identity trust required by an action, weakest first."""

    NONE = "none"
    CONTACT = "contact"
    IDENTITY = "identity"
    FULL = "full"


class Action(str, Enum):
    """Request-layer actions gated by trust."""

    CREATE_LISTING = "create_listing"
    SEND_MESSAGE = "send_message"
    ACCEPT_ASSIGNMENT = "accept_assignment"
    REQUEST_PAYOUT = "request_payout"


@dataclass(frozen=True)
class VerificationFlags:
    """Snapshot of a user's five category flags plus the aggregate flag."""

    email: bool = False
    phone: bool = False
    id: bool = False
    facial: bool = False
    address: bool = False
    is_verified: bool = False

    def category(self, category: Category) -> bool:
        return getattr(self, category.value)

    def all_categories_verified(self) -> bool:
        return all(self.category(c) for c in Category)

    def as_mapping(self) -> dict[Category, bool]:
        return {c: self.category(c) for c in Category}


@dataclass(frozen=True)
class Subscription:
    """A user's subscription fields."""

    tier: SubscriptionTier
    status: SubscriptionStatus
    last_payment_at: datetime | None = None


@dataclass(frozen=True)
class DocumentPayload:
    """Submitted document content; files are references to external storage."""

    document_type: DocumentType
    file_reference: str
    back_file_reference: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationDocument:
    """A stored verification document."""

    id: str
    user_id: str
    document_type: DocumentType
    category: Category
    status: DocumentStatus
    file_reference: str
    created_at: datetime
    back_file_reference: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    rejection_reason: str | None = None
    verified_at: datetime | None = None


@dataclass(frozen=True)
class RateLimitBucket:
    """Attempt counter for one key and the end of its current window."""

    count: int
    window_end: datetime


# A bucket transition receives the current bucket (or None) and returns
# the bucket to store (None deletes it) plus the caller-visible result.
BucketTransition = Callable[[RateLimitBucket | None], tuple[RateLimitBucket | None, Any]]


class DocumentRepository(Protocol):
    """Port interface for verification document persistence."""

    def create(
        self, user_id: str, category: Category, payload: DocumentPayload, created_at: datetime
    ) -> str:
        """Insert a PENDING document and return its id."""
        ...

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        reason: str | None = None,
        verified_at: datetime | None = None,
    ) -> None:
        """Overwrite status, rejection reason and verification timestamp."""
        ...

    def get(self, document_id: str) -> VerificationDocument | None:
        """Fetch a document by id."""
        ...

    def find_latest_by_category(
        self, user_id: str, category: Category
    ) -> VerificationDocument | None:
        """Fetch the authoritative (most recent) document of a category."""
        ...

    def delete_by_category(self, user_id: str, category: Category) -> int:
        """Remove superseded documents of a category, returning how many."""
        ...


class UserRepository(Protocol):
    """Port interface for the user fields this subsystem owns."""

    def lock(self, user_id: str) -> bool:
        """
        Lock the user's row until the enclosing transaction ends.

        Returns:
            False if the user does not exist
        """
        ...

    def get_verification_flags(self, user_id: str) -> VerificationFlags | None:
        ...

    def set_verification_flags(self, user_id: str, **flags: bool) -> None:
        """Partial update; keys are category values or ``is_verified``."""
        ...

    def get_subscription(self, user_id: str) -> Subscription | None:
        ...

    def set_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        status: SubscriptionStatus,
        last_payment_at: datetime | None = None,
    ) -> None:
        """Update tier and status; ``last_payment_at=None`` leaves it unchanged."""
        ...

    def find_lapse_candidates(self, paid_before: datetime) -> list[str]:
        """
        Ids of users not yet downgraded whose last payment is older than ``paid_before``.

        "Not yet downgraded" means any state other than FREE + INACTIVE.
        """
        ...


class UsageRepository(Protocol):
    """Port interface for listing usage counts."""

    def count_listings_since(self, user_id: str, since: datetime) -> int:
        """Packages plus trips created by the user at or after ``since``."""
        ...


class StoreSession(Protocol):
    """Repositories bound to one open transaction."""

    documents: DocumentRepository
    users: UserRepository
    usage: UsageRepository


class TrustStore(Protocol):
    """Port interface for transactional access to the relational store."""

    def transaction(self) -> AbstractContextManager[StoreSession]:
        """
        Open an atomic unit of work.

        Commits when the block exits cleanly and rolls back when it raises,
        so no partial state is ever committed.
        """
        ...


class NotificationSink(Protocol):
    """Port interface for outbound notifications (fire-and-forget)."""

    def verification_changed(self, user_id: str, is_verified: bool) -> None:
        ...

    def document_rejected(self, user_id: str, category: Category, reason: str) -> None:
        ...

    def subscription_downgraded(
        self, user_id: str, tier: SubscriptionTier, reason: str
    ) -> None:
        ...


class RateLimitStore(Protocol):
    """Port interface for the shared rate-limit bucket table."""

    def update(self, key: str, transition: BucketTransition) -> Any:
        """
        Apply ``transition`` to the bucket for ``key`` atomically.

        Concurrent updates of the same key are serialized; different keys
        never block each other.
        """
        ...

    def get(self, key: str) -> RateLimitBucket | None:
        ...

    def delete(self, key: str) -> None:
        ...

    def purge_expired(self, now: datetime) -> int:
        ...


Clock = Callable[[], datetime]
