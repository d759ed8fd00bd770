"""
Notification Dispatcher
Fire-and-forget domain events handed to the delivery collaborator (SMS/email/push live elsewhere)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    AUCTION_WON = "auction_won"
    OUTBID = "outbid"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_REJECTED = "payment_rejected"
    AUCTION_FORFEITED = "auction_forfeited"
    VENDOR_SUSPENDED = "vendor_suspended"
    FRAUD_FLAGGED = "fraud_flagged"


@dataclass
class Notification:
    event: NotificationEvent
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=get_naive_utc_now)


NotificationSink = Callable[[Notification], Any]


def _log_sink(notification: Notification) -> None:
    logger.info(f"📣 NOTIFY {notification.event.value}: {notification.payload}")


class NotificationDispatcher:
    """Dispatch events to registered sinks. Emit only after the state change committed."""

    def __init__(self):
        self._sinks: List[NotificationSink] = [_log_sink]

    def register_sink(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)

    def clear_sinks(self) -> None:
        self._sinks = [_log_sink]

    def emit(self, event: NotificationEvent, **payload: Any) -> int:
        """Deliver to every sink; returns how many sinks accepted it.

        A failing sink is logged and skipped, the committed state change stands.
        """
        notification = Notification(event=event, payload=payload)
        delivered = 0
        for sink in list(self._sinks):
            try:
                sink(notification)
                delivered += 1
            except Exception as e:
                logger.error(f"❌ NOTIFICATION_DELIVERY_FAILED: {event.value} via {getattr(sink, '__name__', sink)}: {e}")
        return delivered


notification_dispatcher = NotificationDispatcher()
