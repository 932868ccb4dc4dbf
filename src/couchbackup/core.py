import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Union

import requests
from rich.console import Console
from rich.progress import (
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from .constants import DIR_MODE, FAIL_FAST
from .errors import BackupError, FetchError, StorageError
from .models import ArtifactRecord, Deadline, RunConfiguration, RunResult, SweepReport
from .services.filesystem import FileSystemService
from .services.notifier import NotificationService
from .services.retention import RetentionService
from .services.snapshot import SnapshotService
from .services.transport import TransportService, TunnelHandle
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("couchbackup")

FetchOutcome = Union[ArtifactRecord, FetchError]


class CouchBackup:
    """Runs one backup: tunnel, snapshots, retention sweep, report."""

    def __init__(self, config: RunConfiguration):
        self.config = config
        self.deadline = Deadline(config.run_timeout)
        self.result = RunResult(databases=tuple(config.databases))
        self.tunnel: Optional[TunnelHandle] = None

        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.validation_service = ValidationService()
        self.transport_service = TransportService(logger=logger, console=console)
        self.snapshot_service = SnapshotService(
            backup_dir=config.backup_dir,
            auth=config.endpoint.auth(),
            logger=logger,
            console=console,
            filesystem_service=self.filesystem_service,
            requests_module=requests,
            timeout=config.request_timeout,
            retry_count=config.retry_count,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
        self.retention_service = RetentionService(logger=logger)
        self.notification_service = NotificationService(
            webhook_url=config.webhook_url,
            logger=logger,
            requests_module=requests,
            timeout=config.notification_timeout,
        )

    def _run_step(self, name: str, callback, *args, check_deadline: bool = True, **kwargs):
        if check_deadline:
            self.deadline.check(name)

        logger.debug("Starting step: %s", name)
        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            logger.debug("Step %s failed: %s", name, exc)
            raise

        logger.debug("Finished step: %s", name)
        return result

    def validate_configuration(self):
        self.validation_service.validate_configuration(self.config, logger, console)

    def print_plan(self):
        connection = (
            f"SSH tunnel via {self.config.tunnel.host}:{self.config.tunnel.port}"
            if self.config.tunnel.enabled
            else f"direct ({self.config.endpoint.base_url})"
        )
        console.print("[bold blue]Dry run: no data will be fetched or deleted.[/bold blue]")
        console.print(f"Databases: {', '.join(self.config.databases)}")
        console.print(f"Connection: {connection}")
        console.print(f"Backup directory: {self.config.backup_dir}")
        console.print(f"Retention: {self.config.retention.days} day(s)")
        console.print(f"Failure policy: {self.config.failure_policy}")
        console.print(
            f"Notification: {'enabled' if self.notification_service.enabled else 'disabled'}"
        )

    def prepare_backup_directory(self):
        logger.info("Preparing backup directory %s", self.config.backup_dir)
        self.filesystem_service.ensure_directory(self.config.backup_dir)
        self.filesystem_service.set_permissions(self.config.backup_dir, DIR_MODE)

    def open_transport(self) -> str:
        base_url, self.tunnel = self.transport_service.acquire(self.config, deadline=self.deadline)
        return base_url

    def close_transport(self):
        if self.tunnel is None:
            return

        try:
            self.tunnel.close()
        except Exception as exc:
            logger.warning("Could not close SSH tunnel cleanly: %s", exc)

    def _fetch_one(self, base_url: str, database: str, progress: Progress) -> ArtifactRecord:
        task = progress.add_task(f"[cyan]{database}", total=None)
        return self.snapshot_service.fetch(
            base_url,
            database,
            on_progress=lambda size: progress.update(task, advance=size),
            deadline=self.deadline,
        )

    def _fetch_sequentially(self, base_url: str, databases: List[str], progress: Progress):
        outcomes: Dict[int, FetchOutcome] = {}

        for index, database in enumerate(databases):
            try:
                outcomes[index] = self._fetch_one(base_url, database, progress)
            except FetchError as exc:
                logger.error("Failed to backup database %s: %s", database, exc)
                outcomes[index] = exc
                if self.config.failure_policy == FAIL_FAST:
                    break

        return outcomes

    def _fetch_concurrently(self, base_url: str, databases: List[str], progress: Progress):
        outcomes: Dict[int, FetchOutcome] = {}

        with ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="couchbackup-fetch",
        ) as executor:
            futures = {
                executor.submit(self._fetch_one, base_url, database, progress): index
                for index, database in enumerate(databases)
            }

            for future in as_completed(futures):
                if future.cancelled():
                    continue

                index = futures[future]
                exc = future.exception()
                if exc is None:
                    outcomes[index] = future.result()
                    continue

                if not isinstance(exc, FetchError):
                    for pending in futures:
                        pending.cancel()
                    raise exc

                logger.error("Failed to backup database %s: %s", databases[index], exc)
                outcomes[index] = exc
                if self.config.failure_policy == FAIL_FAST:
                    for pending in futures:
                        pending.cancel()

        return outcomes

    def fetch_databases(self, base_url: str) -> RunResult:
        databases = list(self.config.databases)
        console.print(f"[blue]Backing up {len(databases)} database(s)...[/blue]")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            if self.config.max_workers > 1 and len(databases) > 1:
                outcomes = self._fetch_concurrently(base_url, databases, progress)
            else:
                outcomes = self._fetch_sequentially(base_url, databases, progress)

        for index, database in enumerate(databases):
            outcome = outcomes.get(index)
            if outcome is None:
                self.result.skipped.append(database)
            elif isinstance(outcome, FetchError):
                self.result.failures[database] = str(outcome)
            else:
                self.result.artifacts.append(outcome)

        if self.result.skipped:
            logger.warning(
                "Skipped database(s) after an earlier failure: %s",
                ", ".join(self.result.skipped),
            )

        return self.result

    def sweep_expired_artifacts(self) -> Optional[SweepReport]:
        logger.info(
            "Removing backups older than %s day(s) from %s",
            self.config.retention.days,
            self.config.backup_dir,
        )
        try:
            report = self.retention_service.sweep(
                self.config.backup_dir,
                self.config.retention,
                keep=[artifact.path for artifact in self.result.artifacts],
            )
        except Exception as exc:
            logger.warning("Retention sweep did not complete: %s", exc)
            return None

        for path, reason in report.failures:
            logger.warning("Could not prune %s: %s", path, reason)
        return report

    def measure_backup_directory(self) -> Optional[int]:
        try:
            self.result.total_size_bytes = self.filesystem_service.size_of_directory(
                self.config.backup_dir
            )
        except StorageError as exc:
            logger.warning(str(exc))
            return None
        return self.result.total_size_bytes

    def compose_summary(self) -> str:
        format_size = self.filesystem_service.format_megabytes
        lines = ["CouchDB backup completed successfully."]
        for artifact in self.result.artifacts:
            lines.append(f"{artifact.database}: {format_size(artifact.size_bytes)}")

        total = (
            format_size(self.result.total_size_bytes)
            if self.result.total_size_bytes is not None
            else "unknown"
        )
        lines.append(f"Total backup directory size: {total}")
        return "\n".join(lines)

    def compose_failure_notice(self) -> str:
        lines = [
            f"CouchDB backup failed for {self.config.endpoint.host}. "
            "Check the backup logs for details."
        ]
        if self.result.failures:
            lines.append(f"Failed databases: {', '.join(self.result.failures)}")
        if self.result.skipped:
            lines.append(f"Not attempted: {', '.join(self.result.skipped)}")
        return "\n".join(lines)

    def send_notification(self) -> bool:
        if self.result.succeeded:
            message = self.compose_summary()
        else:
            message = self.compose_failure_notice()
        return self.notification_service.notify(message)

    def run(self) -> int:
        exit_code = 1
        notify = not self.config.dry_run

        try:
            logger.info("Starting couchbackup for %s database(s)...", len(self.config.databases))
            self._run_step("validate_configuration", self.validate_configuration)

            if self.config.dry_run:
                self.print_plan()
                exit_code = 0
                return exit_code

            self._run_step("prepare_backup_directory", self.prepare_backup_directory)
            base_url = self._run_step("open_transport", self.open_transport)
            self._run_step("fetch_databases", self.fetch_databases, base_url)

            if self.result.failures:
                raise BackupError(
                    f"Backup failed for database(s): {', '.join(self.result.failures)}."
                )

            self._run_step(
                "sweep_expired_artifacts",
                self.sweep_expired_artifacts,
                check_deadline=False,
            )
            self._run_step(
                "measure_backup_directory",
                self.measure_backup_directory,
                check_deadline=False,
            )

            for artifact in self.result.artifacts:
                logger.info(
                    "%s: %s",
                    artifact.database,
                    self.filesystem_service.format_megabytes(artifact.size_bytes),
                )
            console.print("[bold green]Backup completed successfully.[/bold green]")
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self.result.error = "Operation cancelled by user."
            return exit_code
        except BackupError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            self.result.error = str(exc)
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self.result.error = str(exc)
            return exit_code
        finally:
            try:
                if notify:
                    self.send_notification()
            finally:
                self.close_transport()
