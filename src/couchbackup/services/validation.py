"""Input and URL validation helpers for couchbackup."""

from urllib.parse import urlparse

from couchbackup.constants import SUPPORTED_PROTOCOLS
from couchbackup.errors import ConfigurationError
from couchbackup.services.transport import resolve_private_key


class ValidationService:
    """Validates endpoints and protocol policy before any network activity."""

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in SUPPORTED_PROTOCOLS

    def validate_webhook_url(self, webhook_url: str):
        parsed = urlparse(webhook_url)
        if not self.is_url(webhook_url) or not parsed.netloc:
            raise ConfigurationError(
                f"Notification webhook must be an http(s) URL, got '{webhook_url}'."
            )

    def enforce_https_policy(self, config, logger, console):
        """Warns when database credentials would cross the network in clear text."""
        if config.endpoint.protocol != "http" or config.tunnel.enabled:
            return

        if config.endpoint.host in {"localhost", "127.0.0.1", "::1"}:
            return

        logger.warning(
            "Database credentials are sent over plain HTTP to %s.",
            config.endpoint.host,
        )
        console.print(
            "[yellow]Warning:[/yellow] Using plain HTTP without an SSH tunnel. "
            "Prefer HTTPS or enable the tunnel."
        )

    def validate_configuration(self, config, logger, console):
        config.validate()

        if config.tunnel.enabled and config.tunnel.private_key_path:
            resolve_private_key(config.tunnel)

        if config.webhook_url:
            self.validate_webhook_url(config.webhook_url)

        self.enforce_https_policy(config, logger, console)
