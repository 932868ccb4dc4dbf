"""
Retention policy enforcement for backup artifacts.

Deletes files in the backup directory whose modification time is older than
the retention window. Problems with individual files are recorded in the
returned report and never stop the sweep.
"""

import os
import time
from datetime import timedelta
from typing import Callable, Iterable, Optional

from couchbackup.models import SweepReport


class RetentionService:
    """Prunes expired artifacts from the backup directory."""

    def __init__(self, logger, clock: Callable[[], float] = time.time):
        self.logger = logger
        self.clock = clock

    def sweep(
        self,
        directory: str,
        max_age: timedelta,
        now: Optional[float] = None,
        keep: Iterable[str] = (),
    ) -> SweepReport:
        """
        Delete regular files in ``directory`` older than ``max_age``.

        Args:
            directory: Backup directory to scan (not recursive)
            max_age: Retention window
            now: Reference epoch timestamp, defaults to the current time
            keep: Paths that are never deleted, whatever their age

        Returns:
            SweepReport with deleted paths, kept count and per-file failures
        """
        report = SweepReport()
        reference = self.clock() if now is None else now
        cutoff = reference - max_age.total_seconds()
        protected = {os.path.abspath(path) for path in keep}

        try:
            with os.scandir(directory) as iterator:
                entries = list(iterator)
        except OSError as exc:
            self.logger.error("Failed to read backup directory %s: %s", directory, exc)
            report.failures.append((directory, str(exc)))
            return report

        for entry in sorted(entries, key=lambda item: item.name):
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                modified = entry.stat(follow_symlinks=False).st_mtime
            except OSError as exc:
                self.logger.error("Failed to retrieve file info for %s: %s", entry.path, exc)
                report.failures.append((entry.path, str(exc)))
                continue

            if modified >= cutoff or os.path.abspath(entry.path) in protected:
                report.kept += 1
                continue

            try:
                os.remove(entry.path)
            except OSError as exc:
                self.logger.error("Failed to delete file %s: %s", entry.path, exc)
                report.failures.append((entry.path, str(exc)))
                continue

            report.deleted.append(entry.path)
            self.logger.info("Deleted old backup %s.", entry.path)

        self.logger.info(
            "Retention sweep complete. Deleted: %s, kept: %s, errors: %s",
            len(report.deleted),
            report.kept,
            len(report.failures),
        )
        return report
