"""Filesystem helpers for couchbackup."""

import logging
import os
import sys

from rich.console import Console

from couchbackup.constants import BYTES_PER_MB
from couchbackup.errors import StorageError
from couchbackup.errors_catalog import actionable_error


class FileSystemService:
    """Encapsulates backup directory side effects and size accounting."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def ensure_directory(self, path: str):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            raise StorageError(actionable_error("backup_dir_unavailable", path=path)) from exc

        if not os.path.isdir(path):
            raise StorageError(actionable_error("backup_dir_unavailable", path=path))

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except Exception as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def remove_file(self, path: str):
        try:
            os.remove(path)
            self.logger.debug("Removed file: %s", path)
        except FileNotFoundError:
            return
        except OSError as exc:
            message = f"Warning: Could not remove {path}: {exc}"
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)

    def size_of(self, path: str) -> int:
        try:
            return os.stat(path).st_size
        except OSError as exc:
            raise StorageError(f"Could not stat {path}: {exc}") from exc

    def size_of_directory(self, path: str) -> int:
        """Sum of the sizes of the regular files directly inside ``path``."""
        total = 0
        try:
            with os.scandir(path) as entries:
                for entry in entries:
                    if entry.is_file(follow_symlinks=False):
                        total += entry.stat(follow_symlinks=False).st_size
        except OSError as exc:
            raise StorageError(f"Could not measure directory {path}: {exc}") from exc
        return total

    @staticmethod
    def format_megabytes(size_bytes: int) -> str:
        return f"{size_bytes / BYTES_PER_MB:.2f} MB"
