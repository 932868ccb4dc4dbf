"""Domain errors for couchbackup."""


class BackupError(RuntimeError):
    """Raised when the backup run cannot continue safely."""


class ConfigurationError(BackupError):
    """Missing or contradictory settings."""


class TransportError(BackupError):
    """The SSH tunnel could not be established."""


class FetchError(BackupError):
    """A database snapshot could not be fetched or written."""

    def __init__(self, database: str, message: str):
        super().__init__(message)
        self.database = database


class StorageError(BackupError):
    """Filesystem operation on the backup directory failed."""


class NotificationError(BackupError):
    """The summary could not be delivered to the webhook."""


class OperationTimeoutError(BackupError):
    """An operation or the whole run exceeded its time budget."""


class TransportTimeoutError(TransportError, OperationTimeoutError):
    pass


class FetchTimeoutError(FetchError, OperationTimeoutError):
    pass
