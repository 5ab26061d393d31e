from .models import InAppNotification, NotificationQueueEntry
from .notification_db import NotificationDB

__all__ = [
    "InAppNotification",
    "NotificationQueueEntry",
    "NotificationDB",
]
