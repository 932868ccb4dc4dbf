"""
couchbackup - scheduled CouchDB snapshot backups with retention
"""

__version__ = "1.0.0"

from .core import CouchBackup
from .errors import BackupError

__all__ = ["CouchBackup", "BackupError"]
