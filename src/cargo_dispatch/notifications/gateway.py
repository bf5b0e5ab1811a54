"""Notification gateway contract and the in-process implementations."""

import logging
from collections.abc import Iterable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes every notification to the log. Default when nothing else is configured."""

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info(f"Notify {user_id}: {event_type} {payload}")


class CompositeNotifier:
    """Fans a notification out to several gateways; one failing does not stop the rest."""

    def __init__(self, notifiers: Iterable[NotificationGateway]) -> None:
        self._notifiers = list(notifiers)

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        for notifier in self._notifiers:
            safe_notify(notifier, user_id, event_type, payload)


def safe_notify(
    notifier: NotificationGateway | None,
    user_id: str | None,
    event_type: str,
    payload: dict[str, Any],
) -> None:
    """Deliver a notification without ever raising into the caller."""
    if notifier is None or not user_id:
        return
    try:
        notifier.notify(user_id, event_type, payload)
    except Exception:
        logger.exception(f"Failed to deliver {event_type} notification to {user_id}")
