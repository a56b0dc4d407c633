"""
Verification ledger domain service - Aggregate identity trust.

This module owns the five category flags (email, phone, id, facial,
address) and the aggregate "fully verified" flag derived from them.

Aggregate Invariant
===================

    is_verified == email and phone and id and facial and address

Transitions that touch a category flag always settle the aggregate in
the same transaction, under the user's row lock:

- Approve (document review):   flag -> True, aggregate recomputed from
                               a fresh read of all five flags
- Reject (document review):    flag -> False, aggregate -> False
- Contact verified (email link, SMS code): flag -> True, recompute
- Revoke (admin):              flag -> False, aggregate -> False

Submission never changes a flag; only review does. A new submission
supersedes (deletes) earlier documents of the same category, so the
latest document is always the authoritative one.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .exceptions import ConflictError, NotFoundError, ValidationError
from .notifications import notify
from .ports import (
    CONTACT_CATEGORIES,
    Category,
    Clock,
    DocumentPayload,
    DocumentStatus,
    DocumentType,
    NotificationSink,
    ReviewDecision,
    StoreSession,
    TrustStore,
    VerificationDocument,
)

logger = logging.getLogger(__name__)

ADDRESS_METADATA_FIELDS = ("street", "city", "postal_code", "country")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AggregateState:
    """Outcome of a flag-changing operation."""

    user_id: str
    category: Category | None
    category_verified: bool | None
    is_fully_verified: bool
    changed: bool


@dataclass(frozen=True)
class VerificationProgress:
    """Per-category view of a user's verification."""

    per_category: dict[Category, bool]
    completed_count: int
    total_count: int
    is_fully_verified: bool

    @property
    def progress_percentage(self) -> int:
        return round(self.completed_count * 100 / self.total_count)

    @property
    def missing(self) -> list[Category]:
        return [c for c, done in self.per_category.items() if not done]


@dataclass
class VerificationLedger:
    """
    Domain service for document verification and the aggregate flag.

    All flag mutations go through this service.
    """

    store: TrustStore
    notifier: NotificationSink
    clock: Clock = field(default=_utcnow)

    def submit_document(self, user_id: str, payload: DocumentPayload) -> str:
        """
        Store a new PENDING document, superseding earlier ones of its category.

        Args:
            user_id: Owner of the document
            payload: Document type, file references and metadata

        Returns:
            Id of the new document

        Raises:
            ValidationError: Malformed payload
            NotFoundError: Unknown user
            ConflictError: The document's category is already verified
        """
        document_type = self._parse_document_type(payload.document_type)
        category = document_type.category
        self._validate_payload(document_type, payload)

        with self.store.transaction() as session:
            self._lock_user(session, user_id)
            flags = session.users.get_verification_flags(user_id)
            if flags.category(category):
                raise ConflictError(f"{category.value} verification is already completed")

            superseded = session.documents.delete_by_category(user_id, category)
            document_id = session.documents.create(user_id, category, payload, self.clock())

        logger.info(
            "Document %s submitted for user %s (%s), superseded %d",
            document_id,
            user_id,
            document_type.value,
            superseded,
        )
        return document_id

    def review_document(
        self, document_id: str, decision: ReviewDecision, reason: str | None = None
    ) -> AggregateState:
        """
        Approve or reject a document and settle the aggregate flag.

        Document status, category flag and aggregate are written in one
        transaction; a failure commits none of them.

        Raises:
            ValidationError: Rejection without a reason
            NotFoundError: Unknown document
        """
        decision = ReviewDecision(decision)
        if decision is ReviewDecision.REJECT:
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("Rejection reason is required")

        with self.store.transaction() as session:
            document = session.documents.get(document_id)
            if document is None:
                raise NotFoundError(document_id)
            self._lock_user(session, document.user_id)

            # Re-read under the lock; a concurrent review may have landed
            document = session.documents.get(document_id)
            if document is None:
                raise NotFoundError(document_id)
            if document.status.is_terminal:
                logger.warning(
                    "Repeated review of document %s (was %s, now %s)",
                    document_id,
                    document.status.value,
                    decision.value,
                )

            if decision is ReviewDecision.APPROVE:
                session.documents.update_status(
                    document_id, DocumentStatus.VERIFIED, reason=None, verified_at=self.clock()
                )
                state = self._set_category(session, document.user_id, document.category, True)
            else:
                session.documents.update_status(
                    document_id, DocumentStatus.REJECTED, reason=reason, verified_at=None
                )
                state = self._set_category(session, document.user_id, document.category, False)

        if decision is ReviewDecision.REJECT:
            notify(self.notifier.document_rejected, state.user_id, document.category, reason)
        self._announce(state)
        return state

    def record_contact_verified(self, user_id: str, category: Category) -> AggregateState:
        """
        Mark email or phone verified after its out-of-band flow succeeded.

        Raises:
            ValidationError: Category is document-reviewed, not out-of-band
            NotFoundError: Unknown user
        """
        category = Category(category)
        if category not in CONTACT_CATEGORIES:
            raise ValidationError(f"{category.value} is verified by document review")

        with self.store.transaction() as session:
            self._lock_user(session, user_id)
            state = self._set_category(session, user_id, category, True)

        self._announce(state)
        return state

    def revoke_category(self, user_id: str, category: Category) -> AggregateState:
        """Directly un-verify a category; the aggregate always drops."""
        category = Category(category)
        with self.store.transaction() as session:
            self._lock_user(session, user_id)
            state = self._set_category(session, user_id, category, False)

        self._announce(state)
        return state

    def reconcile(self, user_id: str) -> AggregateState:
        """Rewrite the aggregate from the current category flags."""
        with self.store.transaction() as session:
            self._lock_user(session, user_id)
            flags = session.users.get_verification_flags(user_id)
            aggregate = flags.all_categories_verified()
            if aggregate != flags.is_verified:
                session.users.set_verification_flags(user_id, is_verified=aggregate)
            state = AggregateState(
                user_id=user_id,
                category=None,
                category_verified=None,
                is_fully_verified=aggregate,
                changed=aggregate != flags.is_verified,
            )

        self._announce(state)
        return state

    def get_progress(self, user_id: str) -> VerificationProgress:
        with self.store.transaction() as session:
            flags = session.users.get_verification_flags(user_id)
        if flags is None:
            raise NotFoundError(user_id)

        per_category = flags.as_mapping()
        return VerificationProgress(
            per_category=per_category,
            completed_count=sum(per_category.values()),
            total_count=len(per_category),
            is_fully_verified=flags.is_verified,
        )

    def get_document_status(self, user_id: str, category: Category) -> VerificationDocument | None:
        """Latest document of a category, or None if nothing was submitted."""
        category = Category(category)
        with self.store.transaction() as session:
            if session.users.get_verification_flags(user_id) is None:
                raise NotFoundError(user_id)
            return session.documents.find_latest_by_category(user_id, category)

    def _set_category(
        self, session: StoreSession, user_id: str, category: Category, verified: bool
    ) -> AggregateState:
        before = session.users.get_verification_flags(user_id)

        if verified:
            session.users.set_verification_flags(user_id, **{category.value: True})
            # Categories change independently; read all five after the write
            current = session.users.get_verification_flags(user_id)
            aggregate = current.all_categories_verified()
            if aggregate != current.is_verified:
                session.users.set_verification_flags(user_id, is_verified=aggregate)
        else:
            # Flag and aggregate drop together
            aggregate = False
            session.users.set_verification_flags(
                user_id, **{category.value: False, "is_verified": False}
            )

        return AggregateState(
            user_id=user_id,
            category=category,
            category_verified=verified,
            is_fully_verified=aggregate,
            changed=aggregate != before.is_verified,
        )

    def _announce(self, state: AggregateState) -> None:
        if state.changed:
            logger.info(
                "User %s aggregate verification -> %s", state.user_id, state.is_fully_verified
            )
            notify(self.notifier.verification_changed, state.user_id, state.is_fully_verified)

    def _lock_user(self, session: StoreSession, user_id: str) -> None:
        if not session.users.lock(user_id):
            raise NotFoundError(user_id)

    def _parse_document_type(self, document_type: DocumentType | str) -> DocumentType:
        try:
            return DocumentType(document_type)
        except ValueError:
            raise ValidationError(f"Unknown document type: {document_type}") from None

    def _validate_payload(self, document_type: DocumentType, payload: DocumentPayload) -> None:
        """
        Check the payload carries what its document type needs.

        - every document needs a front file reference
        - ID documents other than passports need a back image
        - address documents need the structured address in metadata
        """
        if not payload.file_reference or not payload.file_reference.strip():
            raise ValidationError("Document file is required")

        category = document_type.category
        if (
            category is Category.ID
            and document_type is not DocumentType.PASSPORT
            and not payload.back_file_reference
        ):
            raise ValidationError("Back document image is required for this document type")

        if category is Category.ADDRESS:
            missing = [f for f in ADDRESS_METADATA_FIELDS if not payload.metadata.get(f)]
            if missing:
                raise ValidationError(f"Address fields required: {', '.join(missing)}")
