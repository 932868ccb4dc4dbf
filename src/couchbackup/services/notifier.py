"""Webhook notification service for couchbackup."""

from typing import Optional

import requests

from couchbackup.constants import DEFAULT_NOTIFICATION_TIMEOUT
from couchbackup.errors import NotificationError


class NotificationService:
    """Posts the run summary to a chat webhook as ``{"text": ...}``."""

    def __init__(
        self,
        webhook_url: Optional[str],
        logger,
        requests_module=requests,
        timeout: float = DEFAULT_NOTIFICATION_TIMEOUT,
    ):
        self.webhook_url = webhook_url
        self.logger = logger
        self.requests = requests_module
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def deliver(self, message: str):
        try:
            response = self.requests.post(
                self.webhook_url,
                json={"text": message},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except self.requests.RequestException as exc:
            raise NotificationError(f"Could not deliver notification: {exc}") from exc

    def notify(self, message: str) -> bool:
        if not self.enabled:
            self.logger.debug("No notification webhook configured. Skipping notification.")
            return False

        try:
            self.deliver(message)
        except NotificationError as exc:
            self.logger.warning(str(exc))
            return False

        self.logger.info("Notification sent.")
        return True
