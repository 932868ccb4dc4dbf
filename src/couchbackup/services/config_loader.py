"""Configuration file loader for couchbackup."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from couchbackup.errors import ConfigurationError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "protocol",
        "host",
        "port",
        "username",
        "password",
        "databases",
        "retention_days",
        "backup_dir",
        "ssh_enabled",
        "ssh_host",
        "ssh_port",
        "ssh_username",
        "ssh_password",
        "ssh_private_key_path",
        "forward_src_addr",
        "forward_src_port",
        "forward_dst_addr",
        "forward_dst_port",
        "webhook_url",
        "request_timeout",
        "connect_timeout",
        "notification_timeout",
        "retry_count",
        "retry_backoff_seconds",
        "run_timeout",
        "failure_policy",
        "max_workers",
        "dry_run",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigurationError(f"Unknown configuration keys: {unknown_list}")

        return parsed
