"""
Unified notification intents.

The engine hands (recipient, title, body, metadata) to the notifier and moves
on. Delivery writes the notification into the recipient's
`users/<id>/notifications` collection, where the push transport picks it up.
Failures are logged and dropped: a notification never rolls back a booking
change.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict

from store.base import SERVER_TIMESTAMP

logger = logging.getLogger(__name__)


def notifications_collection(recipient_id: str) -> str:
    return f"users/{recipient_id}/notifications"


@dataclass(frozen=True)
class NotificationIntent:
    recipient_id: str
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class Notifier:

    def __init__(self, store, app=None, asynchronous=True, max_workers=2):
        self._store = store
        self._app = app
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
            if asynchronous else None
        )

    def send(self, recipient_id, title, body, metadata=None) -> None:
        """Queue a notification. Returns immediately and never raises."""
        if not recipient_id:
            logger.warning("Dropping notification %r: no recipient", title)
            return

        intent = NotificationIntent(recipient_id, title, body, dict(metadata or {}))
        if self._executor is None:
            self._run(intent)
            return

        try:
            self._executor.submit(self._run, intent)
        except RuntimeError:
            logger.error("Notifier is shut down; dropping %r for %s", title, recipient_id)

    def _run(self, intent: NotificationIntent) -> None:
        try:
            if self._app is not None:
                with self._app.app_context():
                    self._deliver(intent)
            else:
                self._deliver(intent)
        except Exception:
            logger.exception("Failed to deliver notification %r to %s", intent.title, intent.recipient_id)

    def _deliver(self, intent: NotificationIntent) -> None:
        self._store.add(notifications_collection(intent.recipient_id), {
            "title": intent.title,
            "body": intent.body,
            "read": False,
            "data": intent.metadata,
            "createdAt": SERVER_TIMESTAMP,
        })
        logger.info("Notification sent to %s: %s", intent.recipient_id, intent.title)

    def shutdown(self, wait=True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
