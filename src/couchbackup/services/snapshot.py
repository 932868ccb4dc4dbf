"""Database snapshot download service."""

import os
import time
from datetime import datetime, timedelta, timezone
from typing import BinaryIO, Callable, Optional, Tuple
from urllib.parse import quote

import requests

from couchbackup.constants import (
    ALL_DOCS_PATH,
    ARTIFACT_SUFFIX,
    CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_RETRY_COUNT,
    FILE_MODE,
)
from couchbackup.errors import FetchError, FetchTimeoutError, StorageError
from couchbackup.models import ArtifactRecord


class SnapshotService:
    """Streams ``_all_docs?include_docs=true`` of a database into an artifact file."""

    MAX_NAME_ATTEMPTS = 1000

    def __init__(
        self,
        backup_dir: str,
        auth: Tuple[str, str],
        logger,
        console,
        filesystem_service,
        requests_module=requests,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retry_count: int = DEFAULT_RETRY_COUNT,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backup_dir = backup_dir
        self.auth = auth
        self.logger = logger
        self.console = console
        self.filesystem_service = filesystem_service
        self.requests = requests_module
        self.timeout = timeout
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep

    @staticmethod
    def format_timestamp(moment: datetime) -> str:
        moment = moment.astimezone(timezone.utc)
        return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"

    @staticmethod
    def artifact_name(database: str, timestamp: str) -> str:
        return f"{database.replace('/', '_')}-{timestamp}{ARTIFACT_SUFFIX}"

    @staticmethod
    def build_url(base_url: str, database: str) -> str:
        return f"{base_url.rstrip('/')}/{quote(database, safe='')}/{ALL_DOCS_PATH}"

    def _open_artifact(self, database: str) -> Tuple[str, str, BinaryIO]:
        moment = self.clock()
        for _ in range(self.MAX_NAME_ATTEMPTS):
            timestamp = self.format_timestamp(moment)
            path = os.path.join(self.backup_dir, self.artifact_name(database, timestamp))
            try:
                return path, timestamp, open(path, "xb")
            except FileExistsError:
                moment += timedelta(milliseconds=1)
            except OSError as exc:
                raise FetchError(database, f"Could not create artifact {path}: {exc}") from exc

        raise FetchError(database, f"Could not allocate a unique artifact name for {database}.")

    def fetch(
        self,
        base_url: str,
        database: str,
        on_progress: Optional[Callable[[int], None]] = None,
        deadline=None,
    ) -> ArtifactRecord:
        url = self.build_url(base_url, database)
        path, timestamp, file_obj = self._open_artifact(database)
        self.logger.info("Backing up %s to %s", database, path)

        try:
            with file_obj:
                self._download(url, database, file_obj, on_progress, deadline)
        except BaseException:
            self.filesystem_service.remove_file(path)
            raise

        self.filesystem_service.set_permissions(path, FILE_MODE)
        try:
            size_bytes = self.filesystem_service.size_of(path)
        except StorageError as exc:
            self.filesystem_service.remove_file(path)
            raise FetchError(database, str(exc)) from exc

        self.logger.info(
            "Successfully backed up database %s (%s).",
            database,
            self.filesystem_service.format_megabytes(size_bytes),
        )
        return ArtifactRecord(
            database=database,
            path=path,
            size_bytes=size_bytes,
            timestamp=timestamp,
        )

    def _download(self, url: str, database: str, file_obj: BinaryIO, on_progress, deadline):
        max_attempts = max(1, self.retry_count + 1)

        for attempt in range(1, max_attempts + 1):
            timeout = self.timeout
            if deadline is not None:
                deadline.check(f"fetching {database}")
                timeout = deadline.clamp(timeout)

            file_obj.seek(0)
            file_obj.truncate()

            try:
                with self.requests.get(
                    url,
                    params={"include_docs": "true"},
                    auth=self.auth,
                    stream=True,
                    timeout=timeout,
                ) as response:
                    if 400 <= response.status_code < 500:
                        raise FetchError(
                            database,
                            f"CouchDB rejected the backup request for {database} "
                            f"(HTTP {response.status_code}).",
                        )
                    response.raise_for_status()

                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        file_obj.write(chunk)
                        if on_progress:
                            on_progress(len(chunk))
                return
            except self.requests.Timeout as exc:
                error: FetchError = FetchTimeoutError(
                    database, f"Fetching {database} timed out after {timeout:.1f}s."
                )
                cause: Exception = exc
            except self.requests.RequestException as exc:
                error = FetchError(database, f"Failed to back up database {database}: {exc}")
                cause = exc
            except OSError as exc:
                raise FetchError(database, f"Could not write artifact for {database}: {exc}") from exc

            if attempt < max_attempts:
                self.logger.warning(
                    "Fetching %s failed on attempt %s/%s. Retrying in %.1fs: %s",
                    database,
                    attempt,
                    max_attempts,
                    self.retry_backoff_seconds,
                    error,
                )
                self.sleep(self.retry_backoff_seconds)
                continue

            raise error from cause
