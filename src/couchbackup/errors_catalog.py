"""Actionable error catalog for couchbackup."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_ssh_credentials": {
        "what": "SSH tunnel is enabled but no credentials were provided.",
        "next": "Set `SSH_PRIVATE_KEY_PATH`, or both `SSH_USERNAME` and `SSH_PASSWORD`.",
    },
    "conflicting_ssh_credentials": {
        "what": "SSH tunnel has both a private key and a password configured.",
        "next": "Keep exactly one authentication method: the private key or the password.",
    },
    "ssh_key_not_found": {
        "what": "SSH private key not found: {path}",
        "next": "Check `SSH_PRIVATE_KEY_PATH` points to a readable key file.",
    },
    "missing_ssh_host": {
        "what": "SSH tunnel is enabled but no SSH host is configured.",
        "next": "Set `SSH_HOST` or disable the tunnel with `SSH_ENABLED=0`.",
    },
    "unsupported_protocol": {
        "what": "Unsupported database protocol `{protocol}`.",
        "next": "Use `http` or `https` for `COUCHDB_PROTOCOL`.",
    },
    "no_databases": {
        "what": "No databases configured for backup.",
        "next": "Set `DATABASES` to a comma-separated list of database names.",
    },
    "ssh_auth_failed": {
        "what": "SSH authentication to {host} failed.",
        "next": "Verify the SSH username, password or private key.",
    },
    "backup_dir_unavailable": {
        "what": "Backup directory {path} could not be created.",
        "next": "Check permissions on the parent directory or change `BACKUP_DIRECTORY`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
