"""Shared domain models for couchbackup."""

import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .constants import (
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
from .errors import ConfigurationError, OperationTimeoutError
from .errors_catalog import actionable_error


@dataclass(frozen=True)
class DatabaseEndpoint:
    """Where the CouchDB server listens and how to authenticate against it."""

    protocol: str
    host: str
    port: int
    username: str
    password: str = field(repr=False)

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def auth(self) -> Tuple[str, str]:
        return self.username, self.password


@dataclass(frozen=True)
class TunnelSettings:
    """SSH local-forward settings. Secrets are kept out of ``repr``."""

    enabled: bool = False
    host: Optional[str] = None
    port: int = DEFAULT_SSH_PORT
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = field(default=None, repr=False)
    local_address: str = DEFAULT_FORWARD_ADDRESS
    local_port: int = 0
    remote_address: str = DEFAULT_FORWARD_ADDRESS
    remote_port: Optional[int] = None

    def credential_variant(self) -> str:
        """Return ``"key"`` or ``"password"``; exactly one must be configured."""
        has_key = bool(self.private_key_path)
        has_password = bool(self.password)

        if has_key and has_password:
            raise ConfigurationError(actionable_error("conflicting_ssh_credentials"))
        if has_key:
            return "key"
        if has_password and self.username:
            return "password"
        raise ConfigurationError(actionable_error("missing_ssh_credentials"))


@dataclass(frozen=True)
class RunConfiguration:
    """Immutable settings for a single backup run."""

    databases: Tuple[str, ...]
    endpoint: DatabaseEndpoint
    backup_dir: str
    retention: timedelta
    tunnel: TunnelSettings = field(default_factory=TunnelSettings)
    webhook_url: Optional[str] = None
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    notification_timeout: float = DEFAULT_NOTIFICATION_TIMEOUT
    retry_count: int = DEFAULT_RETRY_COUNT
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    run_timeout: Optional[float] = None
    failure_policy: str = FAIL_FAST
    max_workers: int = 1
    dry_run: bool = False

    def validate(self):
        if not self.databases or not all(name.strip() for name in self.databases):
            raise ConfigurationError(actionable_error("no_databases"))

        if self.endpoint.protocol not in SUPPORTED_PROTOCOLS:
            raise ConfigurationError(
                actionable_error("unsupported_protocol", protocol=self.endpoint.protocol)
            )

        if self.retention < timedelta(0):
            raise ConfigurationError("Retention period must not be negative.")

        for name, value in (
            ("request timeout", self.request_timeout),
            ("connect timeout", self.connect_timeout),
            ("notification timeout", self.notification_timeout),
        ):
            if value <= 0:
                raise ConfigurationError(f"The {name} must be greater than zero.")

        if self.run_timeout is not None and self.run_timeout <= 0:
            raise ConfigurationError("The run timeout must be greater than zero.")

        if self.retry_count < 0:
            raise ConfigurationError("Retry count must not be negative.")

        if self.failure_policy not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unknown failure policy '{self.failure_policy}'. "
                f"Supported policies: {', '.join(FAILURE_POLICIES)}."
            )

        if self.max_workers < 1:
            raise ConfigurationError("Max workers must be at least 1.")

        if self.tunnel.enabled:
            if not self.tunnel.host:
                raise ConfigurationError(actionable_error("missing_ssh_host"))
            self.tunnel.credential_variant()


@dataclass(frozen=True)
class ArtifactRecord:
    """A snapshot file written for one database during one run."""

    database: str
    path: str
    size_bytes: int
    timestamp: str


@dataclass
class RunResult:
    """Per-database outcomes of a run, kept in configured order."""

    databases: Tuple[str, ...]
    artifacts: List[ArtifactRecord] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    total_size_bytes: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.failures and not self.skipped


@dataclass
class SweepReport:
    deleted: List[str] = field(default_factory=list)
    kept: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)


class Deadline:
    """Run-level time budget; ``seconds=None`` never expires."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str):
        if self.expired():
            raise OperationTimeoutError(
                f"Run deadline of {self.seconds}s exceeded before {operation}."
            )

    def clamp(self, timeout: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
