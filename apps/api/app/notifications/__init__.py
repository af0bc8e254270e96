from app.notifications.models import Notification, NotificationEvent, PushToken

__all__ = [
    "Notification",
    "NotificationEvent",
    "PushToken",
]
