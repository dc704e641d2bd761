from .notification import NotificationManager

__all__ = ["NotificationManager"]
