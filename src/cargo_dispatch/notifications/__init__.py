from .gateway import CompositeNotifier, LoggingNotifier, NotificationGateway, safe_notify

__all__ = ["CompositeNotifier", "LoggingNotifier", "NotificationGateway", "safe_notify"]
