from docsign.services.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationRequest,
    get_dispatcher,
    reminder_bucket,
    retry_backoff_ms,
    set_dispatcher,
)

__all__ = [
    "NotificationDispatcher",
    "NotificationEvent",
    "NotificationRequest",
    "get_dispatcher",
    "set_dispatcher",
    "reminder_bucket",
    "retry_backoff_ms",
]
