"""Fire-and-forget delivery to the NotificationSink port."""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def notify(send: Callable[..., Any], *args: Any) -> None:
    """
    Call a sink method after the state change has committed.

    Delivery failures never undo or fail the operation that caused them;
    they are logged and dropped.
    """
    try:
        send(*args)
    except Exception:
        logger.warning("Notification %s failed", getattr(send, "__name__", send), exc_info=True)
