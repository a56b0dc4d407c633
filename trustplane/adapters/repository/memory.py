"""
In-memory repository adapter - Implements the TrustStore protocol.

For single-process deployments, development and tests. Transactions are
serialized by one re-entrant lock, which also stands in for row locks;
the tables a transaction writes are copied on its first write and
restored when the block raises, so failed units commit nothing.
"""

import itertools
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime

from trustplane.domain.ports import (
    Category,
    DocumentPayload,
    DocumentStatus,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    VerificationDocument,
    VerificationFlags,
)


@dataclass
class _UserRecord:
    flags: VerificationFlags = field(default_factory=VerificationFlags)
    subscription: Subscription = field(
        default_factory=lambda: Subscription(SubscriptionTier.FREE, SubscriptionStatus.INACTIVE)
    )


@dataclass
class _State:
    users: dict[str, _UserRecord] = field(default_factory=dict)
    documents: dict[str, VerificationDocument] = field(default_factory=dict)
    # document id -> insertion sequence, breaks created_at ties
    document_seq: dict[str, int] = field(default_factory=dict)
    # (user_id, kind, created_at)
    listings: list[tuple[str, str, datetime]] = field(default_factory=list)


class _UndoLog:
    """Copies users and documents the first time a transaction writes."""

    def __init__(self, state: _State) -> None:
        self._state = state
        self._saved: tuple | None = None

    def before_write(self) -> None:
        if self._saved is None:
            # Records hold frozen values, so copying each record is enough
            self._saved = (
                {user_id: replace(record) for user_id, record in self._state.users.items()},
                dict(self._state.documents),
                dict(self._state.document_seq),
            )

    def rollback(self) -> None:
        if self._saved is not None:
            self._state.users, self._state.documents, self._state.document_seq = self._saved


class _InMemoryDocuments:
    def __init__(self, state: _State, seq: Iterator[int], undo: _UndoLog) -> None:
        self._state = state
        self._seq = seq
        self._undo = undo

    def create(
        self, user_id: str, category: Category, payload: DocumentPayload, created_at: datetime
    ) -> str:
        self._undo.before_write()
        document_id = str(uuid.uuid4())
        self._state.documents[document_id] = VerificationDocument(
            id=document_id,
            user_id=user_id,
            document_type=payload.document_type,
            category=category,
            status=DocumentStatus.PENDING,
            file_reference=payload.file_reference,
            back_file_reference=payload.back_file_reference,
            metadata=dict(payload.metadata),
            created_at=created_at,
        )
        self._state.document_seq[document_id] = next(self._seq)
        return document_id

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        reason: str | None = None,
        verified_at: datetime | None = None,
    ) -> None:
        self._undo.before_write()
        document = self._state.documents[document_id]
        self._state.documents[document_id] = replace(
            document, status=status, rejection_reason=reason, verified_at=verified_at
        )

    def get(self, document_id: str) -> VerificationDocument | None:
        return self._state.documents.get(document_id)

    def find_latest_by_category(
        self, user_id: str, category: Category
    ) -> VerificationDocument | None:
        candidates = [
            d
            for d in self._state.documents.values()
            if d.user_id == user_id and d.category == category
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: (d.created_at, self._state.document_seq[d.id]))

    def delete_by_category(self, user_id: str, category: Category) -> int:
        doomed = [
            d.id
            for d in self._state.documents.values()
            if d.user_id == user_id and d.category == category
        ]
        if doomed:
            self._undo.before_write()
        for document_id in doomed:
            del self._state.documents[document_id]
            del self._state.document_seq[document_id]
        return len(doomed)


class _InMemoryUsers:
    def __init__(self, state: _State, undo: _UndoLog) -> None:
        self._state = state
        self._undo = undo

    def lock(self, user_id: str) -> bool:
        # The store-wide transaction lock already serializes writers
        return user_id in self._state.users

    def get_verification_flags(self, user_id: str) -> VerificationFlags | None:
        record = self._state.users.get(user_id)
        return record.flags if record else None

    def set_verification_flags(self, user_id: str, **flags: bool) -> None:
        self._undo.before_write()
        record = self._state.users[user_id]
        record.flags = replace(record.flags, **flags)

    def get_subscription(self, user_id: str) -> Subscription | None:
        record = self._state.users.get(user_id)
        return record.subscription if record else None

    def set_subscription(
        self,
        user_id: str,
        tier: SubscriptionTier,
        status: SubscriptionStatus,
        last_payment_at: datetime | None = None,
    ) -> None:
        self._undo.before_write()
        record = self._state.users[user_id]
        record.subscription = Subscription(
            tier=tier,
            status=status,
            last_payment_at=last_payment_at or record.subscription.last_payment_at,
        )

    def find_lapse_candidates(self, paid_before: datetime) -> list[str]:
        return [
            user_id
            for user_id, record in self._state.users.items()
            if record.subscription.last_payment_at is not None
            and record.subscription.last_payment_at < paid_before
            and (record.subscription.tier, record.subscription.status)
            != (SubscriptionTier.FREE, SubscriptionStatus.INACTIVE)
        ]


class _InMemoryUsage:
    def __init__(self, state: _State) -> None:
        self._state = state

    def count_listings_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1 for owner, _, created_at in self._state.listings if owner == user_id and created_at >= since
        )


@dataclass
class InMemorySession:
    """Repositories bound to the in-memory state for one transaction."""

    documents: _InMemoryDocuments
    users: _InMemoryUsers
    usage: _InMemoryUsage


class InMemoryTrustStore:
    """
    Implements TrustStore protocol over process memory.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = threading.RLock()
        self._seq = itertools.count()

    @contextmanager
    def transaction(self) -> Iterator[InMemorySession]:
        with self._lock:
            undo = _UndoLog(self._state)
            try:
                yield InMemorySession(
                    documents=_InMemoryDocuments(self._state, self._seq, undo),
                    users=_InMemoryUsers(self._state, undo),
                    usage=_InMemoryUsage(self._state),
                )
            except BaseException:
                undo.rollback()
                raise

    def add_user(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE,
        status: SubscriptionStatus = SubscriptionStatus.INACTIVE,
        last_payment_at: datetime | None = None,
        **flags: bool,
    ) -> None:
        """Register a user, as the registration flow would."""
        with self._lock:
            self._state.users[user_id] = _UserRecord(
                flags=VerificationFlags(**flags),
                subscription=Subscription(tier, status, last_payment_at),
            )

    def add_listing(self, user_id: str, created_at: datetime, kind: str = "package") -> None:
        """Record a package or trip, as the listing handlers would."""
        if kind not in ("package", "trip"):
            raise ValueError(f"Unknown listing kind: {kind}")
        with self._lock:
            self._state.listings.append((user_id, kind, created_at))
