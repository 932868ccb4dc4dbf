import logging
import os
from datetime import timedelta

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from .constants import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_FORWARD_ADDRESS,
    DEFAULT_NOTIFICATION_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_RETRY_COUNT,
    DEFAULT_SSH_PORT,
    FAIL_FAST,
    FAILURE_POLICIES,
    SUPPORTED_PROTOCOLS,
)
from .core import CouchBackup
from .errors import BackupError
from .models import DatabaseEndpoint, RunConfiguration, TunnelSettings
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _parse_databases(value):
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        names = [str(item) for item in value]
    else:
        names = str(value).split(",")
    return tuple(name.strip() for name in names if name.strip())


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional(cast, value):
    if value is None or value == "":
        return None
    return cast(value)


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .couchbackup.yml if present.",
)
@click.option(
    "--protocol",
    envvar="COUCHDB_PROTOCOL",
    type=click.Choice(SUPPORTED_PROTOCOLS),
    help="CouchDB protocol.",
)
@click.option("--host", envvar="COUCHDB_HOST", help="CouchDB host.")
@click.option("--port", envvar="COUCHDB_PORT", type=int, help="CouchDB port.")
@click.option("--username", envvar="COUCHDB_USERNAME", help="CouchDB user.")
@click.option("--password", envvar="COUCHDB_PASSWORD", help="CouchDB password.")
@click.option(
    "--databases",
    envvar="DATABASES",
    help="Comma-separated list of databases to back up.",
)
@click.option(
    "--retention-days",
    envvar="DATA_RETENTION_DAYS",
    type=float,
    help="Delete backups older than this many days.",
)
@click.option(
    "--backup-dir",
    envvar="BACKUP_DIRECTORY",
    type=click.Path(),
    help=f"Directory for backup files (default: {DEFAULT_BACKUP_DIR}).",
)
@click.option(
    "--ssh/--no-ssh",
    "ssh_enabled",
    envvar="SSH_ENABLED",
    default=None,
    help="Reach CouchDB through an SSH local forward.",
)
@click.option("--ssh-host", envvar="SSH_HOST", help="SSH jump host.")
@click.option("--ssh-port", envvar="SSH_PORT", type=int, help="SSH port (default: 22).")
@click.option("--ssh-username", envvar="SSH_USERNAME", help="SSH login name.")
@click.option("--ssh-password", envvar="SSH_PASSWORD", help="SSH password.")
@click.option(
    "--ssh-private-key",
    envvar="SSH_PRIVATE_KEY_PATH",
    type=click.Path(),
    help="Path to the SSH private key.",
)
@click.option("--forward-src-addr", envvar="FORWARD_SRC_ADDR", help="Local forward address.")
@click.option(
    "--forward-src-port",
    envvar="FORWARD_SRC_PORT",
    type=int,
    help="Local forward port (default: any free port).",
)
@click.option("--forward-dst-addr", envvar="FORWARD_DST_ADDR", help="Remote forward address.")
@click.option(
    "--forward-dst-port",
    envvar="FORWARD_DST_PORT",
    type=int,
    help="Remote forward port (default: the CouchDB port).",
)
@click.option(
    "--webhook-url",
    envvar="NOTIFICATION_WEBHOOK_URL",
    help="Webhook receiving the run summary as {\"text\": ...}.",
)
@click.option(
    "--request-timeout",
    envvar="REQUEST_TIMEOUT",
    type=float,
    help="HTTP timeout in seconds for each database fetch.",
)
@click.option(
    "--connect-timeout",
    envvar="CONNECT_TIMEOUT",
    type=float,
    help="SSH connect timeout in seconds.",
)
@click.option(
    "--notification-timeout",
    envvar="NOTIFICATION_TIMEOUT",
    type=float,
    help="Webhook timeout in seconds.",
)
@click.option(
    "--retry-count",
    envvar="RETRY_COUNT",
    type=int,
    help="Number of retries for transient fetch failures.",
)
@click.option(
    "--retry-backoff-seconds",
    envvar="RETRY_BACKOFF_SECONDS",
    type=float,
    help="Backoff time in seconds between retries.",
)
@click.option(
    "--run-timeout",
    envvar="RUN_TIMEOUT",
    type=float,
    help="Abort the whole run after this many seconds.",
)
@click.option(
    "--failure-policy",
    envvar="FAILURE_POLICY",
    type=click.Choice(FAILURE_POLICIES),
    help="Stop at the first failed database (fail-fast) or back up the rest (continue).",
)
@click.option(
    "--max-workers",
    envvar="MAX_WORKERS",
    type=int,
    help="Number of databases fetched in parallel (default: 1).",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate configuration and print the backup plan without fetching anything.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", envvar="LOG_FILE", type=click.Path(), help="Path to log file")
def main(
    config,
    protocol,
    host,
    port,
    username,
    password,
    databases,
    retention_days,
    backup_dir,
    ssh_enabled,
    ssh_host,
    ssh_port,
    ssh_username,
    ssh_password,
    ssh_private_key,
    forward_src_addr,
    forward_src_port,
    forward_dst_addr,
    forward_dst_port,
    webhook_url,
    request_timeout,
    connect_timeout,
    notification_timeout,
    retry_count,
    retry_backoff_seconds,
    run_timeout,
    failure_policy,
    max_workers,
    dry_run,
    verbose,
    log_file,
):
    """Back up CouchDB databases to JSON files and prune old backups."""
    logger = logging.getLogger("couchbackup")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except BackupError as exc:
        raise click.ClickException(str(exc)) from exc

    protocol = _resolve_option(protocol, config_values, "protocol")
    host = _resolve_option(host, config_values, "host")
    port = _resolve_option(port, config_values, "port")
    username = _resolve_option(username, config_values, "username")
    password = _resolve_option(password, config_values, "password")
    databases = _parse_databases(_resolve_option(databases, config_values, "databases"))
    retention_days = _resolve_option(retention_days, config_values, "retention_days")
    backup_dir = _resolve_option(backup_dir, config_values, "backup_dir", default=DEFAULT_BACKUP_DIR)
    ssh_enabled = _as_bool(_resolve_option(ssh_enabled, config_values, "ssh_enabled", default=False))
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    dry_run = bool(_resolve_option(dry_run, config_values, "dry_run", default=False))

    missing = [
        option
        for option, value in (
            ("--protocol", protocol),
            ("--host", host),
            ("--port", port),
            ("--username", username),
            ("--password", password),
            ("--databases", databases),
            ("--retention-days", retention_days),
        )
        if value in (None, "", ())
    ]
    if missing:
        raise click.ClickException(
            f"Missing required option(s) {', '.join(missing)} "
            "(or provide them in the environment or config)."
        )

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        endpoint = DatabaseEndpoint(
            protocol=str(protocol).lower(),
            host=str(host),
            port=int(port),
            username=str(username),
            password=str(password),
        )
        tunnel = TunnelSettings(
            enabled=ssh_enabled,
            host=_resolve_option(ssh_host, config_values, "ssh_host"),
            port=int(_resolve_option(ssh_port, config_values, "ssh_port", default=DEFAULT_SSH_PORT)),
            username=_resolve_option(ssh_username, config_values, "ssh_username"),
            password=_resolve_option(ssh_password, config_values, "ssh_password"),
            private_key_path=_resolve_option(
                ssh_private_key, config_values, "ssh_private_key_path"
            ),
            local_address=_resolve_option(
                forward_src_addr, config_values, "forward_src_addr", default=DEFAULT_FORWARD_ADDRESS
            ),
            local_port=int(_resolve_option(forward_src_port, config_values, "forward_src_port", default=0)),
            remote_address=_resolve_option(
                forward_dst_addr, config_values, "forward_dst_addr", default=DEFAULT_FORWARD_ADDRESS
            ),
            remote_port=_optional(
                int, _resolve_option(forward_dst_port, config_values, "forward_dst_port")
            ),
        )
        run_config = RunConfiguration(
            databases=databases,
            endpoint=endpoint,
            tunnel=tunnel,
            backup_dir=os.path.abspath(str(backup_dir)),
            retention=timedelta(days=float(retention_days)),
            webhook_url=_resolve_option(webhook_url, config_values, "webhook_url"),
            request_timeout=float(
                _resolve_option(
                    request_timeout, config_values, "request_timeout", default=DEFAULT_REQUEST_TIMEOUT
                )
            ),
            connect_timeout=float(
                _resolve_option(
                    connect_timeout, config_values, "connect_timeout", default=DEFAULT_CONNECT_TIMEOUT
                )
            ),
            notification_timeout=float(
                _resolve_option(
                    notification_timeout,
                    config_values,
                    "notification_timeout",
                    default=DEFAULT_NOTIFICATION_TIMEOUT,
                )
            ),
            retry_count=int(
                _resolve_option(retry_count, config_values, "retry_count", default=DEFAULT_RETRY_COUNT)
            ),
            retry_backoff_seconds=float(
                _resolve_option(
                    retry_backoff_seconds,
                    config_values,
                    "retry_backoff_seconds",
                    default=DEFAULT_RETRY_BACKOFF_SECONDS,
                )
            ),
            run_timeout=_optional(float, _resolve_option(run_timeout, config_values, "run_timeout")),
            failure_policy=_resolve_option(
                failure_policy, config_values, "failure_policy", default=FAIL_FAST
            ),
            max_workers=int(_resolve_option(max_workers, config_values, "max_workers", default=1)),
            dry_run=dry_run,
        )
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration value: {exc}") from exc

    try:
        backup = CouchBackup(config=run_config)
    except BackupError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(backup.run())


def run():
    """Console entry point: loads ``.env`` from the working directory, then runs the CLI."""
    load_dotenv(os.path.join(os.getcwd(), ".env"), override=False)
    main()


if __name__ == "__main__":
    run()
