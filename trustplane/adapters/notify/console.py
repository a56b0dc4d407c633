"""
Console notification adapter - Implements NotificationSink protocol.

This module provides a console-based implementation of the domain's
notification port, logging events instead of sending email/SMS.
"""

import logging

from trustplane.domain.ports import Category, SubscriptionTier

logger = logging.getLogger(__name__)


class ConsoleNotificationSink:
    """
    Implements NotificationSink protocol via console logging.

    Uses structural subtyping - no explicit inheritance from Protocol.
    For demo/development purposes; production wires an email/SMS adapter.
    """

    def verification_changed(self, user_id: str, is_verified: bool) -> None:
        logger.info("[NOTIFY] User: %s fully verified: %s", user_id, is_verified)

    def document_rejected(self, user_id: str, category: Category, reason: str) -> None:
        logger.info(
            "[NOTIFY] User: %s %s document rejected: %s", user_id, Category(category).value, reason
        )

    def subscription_downgraded(self, user_id: str, tier: SubscriptionTier, reason: str) -> None:
        logger.info(
            "[NOTIFY] User: %s subscription now %s: %s",
            user_id,
            SubscriptionTier(tier).value,
            reason,
        )
