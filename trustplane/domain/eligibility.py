"""
Eligibility facade - Single decision point for the request layer.

Composes the verification ledger (identity trust) and the quota engine
(posting capacity). The facade reads and composes; the only writes it
makes are submissions and reviews forwarded unchanged to the ledger.
"""

from dataclasses import dataclass

from .ports import Action, Category, DocumentPayload, ReviewDecision, TrustLevel
from .quota import PostEligibility, QuotaEngine
from .verification import AggregateState, VerificationLedger, VerificationProgress

# Categories each trust level demands; FULL is checked on the aggregate flag
TRUST_REQUIREMENTS: dict[TrustLevel, tuple[Category, ...]] = {
    TrustLevel.NONE: (),
    TrustLevel.CONTACT: (Category.EMAIL, Category.PHONE),
    TrustLevel.IDENTITY: (Category.EMAIL, Category.PHONE, Category.ID),
    TrustLevel.FULL: tuple(Category),
}

ACTION_TRUST: dict[Action, TrustLevel] = {
    Action.CREATE_LISTING: TrustLevel.NONE,
    Action.SEND_MESSAGE: TrustLevel.CONTACT,
    Action.ACCEPT_ASSIGNMENT: TrustLevel.IDENTITY,
    Action.REQUEST_PAYOUT: TrustLevel.FULL,
}


@dataclass(frozen=True)
class ActionAssessment:
    """Trust decision and the categories still missing, from one progress read."""

    action: Action
    required_trust: TrustLevel
    allowed: bool
    missing_categories: list[Category]


def _meets(progress: VerificationProgress, required: TrustLevel) -> bool:
    if required is TrustLevel.FULL:
        return progress.is_fully_verified
    return all(progress.per_category[c] for c in TRUST_REQUIREMENTS[required])


def _missing(progress: VerificationProgress, required: TrustLevel) -> list[Category]:
    return [c for c in TRUST_REQUIREMENTS[required] if not progress.per_category[c]]


@dataclass
class EligibilityService:
    """Answers "may this user do X now" for the request layer."""

    ledger: VerificationLedger
    quota: QuotaEngine

    def can_create_listing(self, user_id: str) -> PostEligibility:
        return self.quota.can_post(user_id)

    def is_trusted_for_action(self, user_id: str, required: TrustLevel) -> bool:
        required = TrustLevel(required)
        if required is TrustLevel.NONE:
            return True
        return _meets(self.ledger.get_progress(user_id), required)

    def is_allowed(self, user_id: str, action: Action) -> bool:
        return self.is_trusted_for_action(user_id, ACTION_TRUST[Action(action)])

    def missing_categories(self, user_id: str, required: TrustLevel) -> list[Category]:
        """Categories still to verify before ``required`` trust is reached."""
        required = TrustLevel(required)
        if required is TrustLevel.NONE:
            return []
        return _missing(self.ledger.get_progress(user_id), required)

    def assess(self, user_id: str, action: Action) -> ActionAssessment:
        """
        Decide ``action`` and list what is missing for it.

        Both answers come from the same progress read, so they never disagree.
        """
        action = Action(action)
        required = ACTION_TRUST[action]
        if required is TrustLevel.NONE:
            return ActionAssessment(action, required, allowed=True, missing_categories=[])
        progress = self.ledger.get_progress(user_id)
        return ActionAssessment(
            action,
            required,
            allowed=_meets(progress, required),
            missing_categories=_missing(progress, required),
        )

    def submit_document(self, user_id: str, payload: DocumentPayload) -> str:
        return self.ledger.submit_document(user_id, payload)

    def review_document(
        self, document_id: str, decision: ReviewDecision, reason: str | None = None
    ) -> AggregateState:
        return self.ledger.review_document(document_id, decision, reason)
