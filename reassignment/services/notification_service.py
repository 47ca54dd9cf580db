"""Best-effort notification dispatch."""

from __future__ import annotations

from typing import Sequence

from reassignment.domain.contracts import Notifier
from reassignment.utils.logger import get_logger


logger = get_logger(__name__)


class NotificationService:
    """Sends through a :class:`Notifier` and never lets a failure escape."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier

    def send(self, user_id: str, message: str, channels: Sequence[str]) -> bool:
        if not channels:
            logger.info("Notification skipped | user_id=%s | reason=no channels enabled", user_id)
            return False
        try:
            self._notifier.notify(user_id, message, list(channels))
        except Exception:
            logger.warning(
                "Notification failed | user_id=%s | channels=%s",
                user_id,
                ",".join(channels),
                exc_info=True,
            )
            return False
        return True
