from wagateway.notifications.manager import NotificationManager

__all__ = ["NotificationManager"]
