"""
Quota engine domain service - Posting capacity per billing period.

Decides how many listings (packages + trips) a user may still create
in the current billing period, and lazily corrects lapsed subscriptions.

Status Evaluation (per call, under the user's row lock)
=======================================================

1. Expiry: last payment older than one calendar month
   -> tier FREE, status INACTIVE (persisted), needs_resubscribe
2. Paid tier usage: listings since last payment >= tier maximum
   -> status INACTIVE (persisted), needs_resubscribe, 0 remaining
3. Otherwise: remaining = max(0, maximum - used)

Writes in steps 1 and 2 are only issued when the stored state differs,
so repeated evaluation converges on the same state and never consumes
a post. The scheduled sweep applies the same step 1 rule.

Concurrency note: the row lock serializes status checks for one user,
but listings are inserted by the request layer after the check commits.
Concurrent creations may therefore overshoot the maximum by at most the
number of requests admitted between a check and its insert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from .billing import add_one_month, is_expired, subtract_one_month
from .exceptions import NotFoundError, ValidationError
from .notifications import notify
from .ports import (
    Clock,
    NotificationSink,
    StoreSession,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    TrustStore,
)

logger = logging.getLogger(__name__)

EXPIRED_REASON = (
    "Your subscription has expired. Please renew to continue enjoying premium features."
)
EXHAUSTED_REASON = "You have used all your available posts for this subscription period."
NO_PAYMENT_REASON = "No payment is recorded for your subscription. Please subscribe to post."
RENEW_MESSAGE = "Your subscription needs to be renewed before posting."

# Shortest calendar month; any payment at least this old may have lapsed
_SWEEP_LOOKBACK = timedelta(days=28)

DEFAULT_TIER_LIMITS = {
    SubscriptionTier.FREE: 3,
    SubscriptionTier.STANDARD: 10,
    SubscriptionTier.PREMIUM: 50,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuotaStatus:
    """Subscription and remaining-capacity snapshot for one user."""

    tier: SubscriptionTier
    is_subscription_active: bool
    remaining_posts: int
    needs_resubscribe: bool
    reason: str | None = None
    posts_used: int | None = None
    max_posts: int | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class PostEligibility:
    """Whether a user may create a listing right now."""

    can_post: bool
    remaining_posts: int
    current_tier: SubscriptionTier
    message: str | None = None


@dataclass
class QuotaEngine:
    """
    Domain service for subscription expiry and post quotas.

    The billing period is derived from ``last_payment_at`` on every call;
    no period record is stored.
    """

    store: TrustStore
    notifier: NotificationSink
    tier_limits: dict[SubscriptionTier, int] = field(
        default_factory=lambda: dict(DEFAULT_TIER_LIMITS)
    )
    clock: Clock = field(default=_utcnow)

    def max_posts(self, tier: SubscriptionTier) -> int:
        return self.tier_limits.get(tier, self.tier_limits[SubscriptionTier.FREE])

    def get_status(self, user_id: str) -> QuotaStatus:
        """
        Evaluate the user's subscription, persisting any downgrade.

        Raises:
            NotFoundError: Unknown user
        """
        now = self.clock()
        with self.store.transaction() as session:
            if not session.users.lock(user_id):
                raise NotFoundError(user_id)
            subscription = session.users.get_subscription(user_id)
            status, downgraded = self._evaluate(session, user_id, subscription, now)

        if downgraded:
            logger.info("User %s subscription downgraded: %s", user_id, status.reason)
            notify(self.notifier.subscription_downgraded, user_id, status.tier, status.reason)
        return status

    def can_post(self, user_id: str) -> PostEligibility:
        status = self.get_status(user_id)

        if status.needs_resubscribe:
            return PostEligibility(
                can_post=False,
                remaining_posts=0,
                current_tier=status.tier,
                message=status.reason or RENEW_MESSAGE,
            )
        if status.remaining_posts <= 0:
            return PostEligibility(
                can_post=False,
                remaining_posts=0,
                current_tier=status.tier,
                message=EXHAUSTED_REASON,
            )
        return PostEligibility(
            can_post=True, remaining_posts=status.remaining_posts, current_tier=status.tier
        )

    def record_payment(
        self, user_id: str, tier: SubscriptionTier, paid_at: datetime | None = None
    ) -> QuotaStatus:
        """
        Apply a payment-succeeded event: activate ``tier`` and start a new period.

        Raises:
            ValidationError: Payment for the free tier, or a naive ``paid_at``
            NotFoundError: Unknown user
        """
        tier = SubscriptionTier(tier)
        if tier is SubscriptionTier.FREE:
            raise ValidationError("The free tier cannot be purchased")
        if paid_at is not None and paid_at.utcoffset() is None:
            raise ValidationError("Payment time must include a timezone")
        paid_at = paid_at or self.clock()

        with self.store.transaction() as session:
            if not session.users.lock(user_id):
                raise NotFoundError(user_id)
            session.users.set_subscription(
                user_id, tier, SubscriptionStatus.ACTIVE, last_payment_at=paid_at
            )

        logger.info("User %s paid for %s at %s", user_id, tier.value, paid_at.isoformat())
        return self.get_status(user_id)

    def expire_lapsed_subscriptions(self) -> int:
        """
        Downgrade every paid subscription whose period has ended.

        Each user is corrected in its own transaction with the same rule
        as the lazy check, so both paths converge.

        Returns:
            Number of users downgraded by this sweep
        """
        now = self.clock()
        with self.store.transaction() as session:
            candidates = session.users.find_lapse_candidates(now - _SWEEP_LOOKBACK)

        downgraded = 0
        for user_id in candidates:
            with self.store.transaction() as session:
                if not session.users.lock(user_id):
                    continue
                subscription = session.users.get_subscription(user_id)
                if not is_expired(now, subscription.last_payment_at):
                    continue
                changed = self._downgrade(session, user_id, subscription)
            if changed:
                downgraded += 1
                notify(
                    self.notifier.subscription_downgraded,
                    user_id,
                    SubscriptionTier.FREE,
                    EXPIRED_REASON,
                )

        logger.info("Subscription sweep downgraded %d of %d candidates", downgraded, len(candidates))
        return downgraded

    def _evaluate(
        self, session: StoreSession, user_id: str, subscription: Subscription, now: datetime
    ) -> tuple[QuotaStatus, bool]:
        last_payment_at = subscription.last_payment_at

        if is_expired(now, last_payment_at):
            changed = self._downgrade(session, user_id, subscription)
            return (
                QuotaStatus(
                    tier=SubscriptionTier.FREE,
                    is_subscription_active=False,
                    remaining_posts=0,
                    needs_resubscribe=True,
                    reason=EXPIRED_REASON,
                    max_posts=self.max_posts(SubscriptionTier.FREE),
                    period_end=add_one_month(last_payment_at),
                ),
                changed,
            )

        tier = subscription.tier
        max_posts = self.max_posts(tier)
        is_active = subscription.status is SubscriptionStatus.ACTIVE

        if tier is SubscriptionTier.FREE:
            since = subtract_one_month(now)
            period_end = None
        elif last_payment_at is None:
            return (
                QuotaStatus(
                    tier=tier,
                    is_subscription_active=is_active,
                    remaining_posts=0,
                    needs_resubscribe=True,
                    reason=NO_PAYMENT_REASON,
                    max_posts=max_posts,
                ),
                False,
            )
        else:
            since = last_payment_at
            period_end = add_one_month(last_payment_at)

        posts_used = session.usage.count_listings_since(user_id, since)

        if tier is not SubscriptionTier.FREE and posts_used >= max_posts:
            changed = is_active
            if changed:
                session.users.set_subscription(user_id, tier, SubscriptionStatus.INACTIVE)
            return (
                QuotaStatus(
                    tier=tier,
                    is_subscription_active=False,
                    remaining_posts=0,
                    needs_resubscribe=True,
                    reason=EXHAUSTED_REASON,
                    posts_used=posts_used,
                    max_posts=max_posts,
                    period_end=period_end,
                ),
                changed,
            )

        return (
            QuotaStatus(
                tier=tier,
                is_subscription_active=is_active,
                remaining_posts=max(0, max_posts - posts_used),
                needs_resubscribe=False,
                posts_used=posts_used,
                max_posts=max_posts,
                period_end=period_end,
            ),
            False,
        )

    def _downgrade(self, session: StoreSession, user_id: str, subscription: Subscription) -> bool:
        if (
            subscription.tier is SubscriptionTier.FREE
            and subscription.status is SubscriptionStatus.INACTIVE
        ):
            return False
        session.users.set_subscription(
            user_id, SubscriptionTier.FREE, SubscriptionStatus.INACTIVE
        )
        return True
