"""
Custom exceptions for TiDB to warehouse replication
"""


class ReplicationException(Exception):
    """Base exception for replication operations"""
    pass


class ConfigurationError(ReplicationException):
    """Configuration related errors"""
    pass


class ConnectivityError(ReplicationException):
    """Source, target or object storage is unreachable"""
    pass


class StorageError(ReplicationException):
    """Object storage operation errors"""
    pass


class UnsupportedDDLError(ReplicationException):
    """Schema change that cannot be applied to the target safely"""

    def __init__(self, action: str, message: str):
        self.action = action
        super().__init__(f"Unsupported DDL '{action}': {message}")


class MergeError(ReplicationException):
    """Change batch cannot be turned into a merge statement"""
    pass


class BulkLoadError(ReplicationException):
    """Snapshot bulk load failed"""
    pass


class SnapshotFilesNotFoundError(BulkLoadError):
    """No snapshot part files matched in the workspace"""
    pass


class SnapshotExtractionError(ReplicationException):
    """Snapshot extractor exited with an error"""
    pass


class CaptureRegistrationError(ReplicationException):
    """Change capture job could not be registered"""
    pass


class ProgressObservationError(ReplicationException):
    """Load progress could not be observed (never propagated)"""
    pass


class DegradedTranslationWarning(UserWarning):
    """DDL translation dropped a column or clause it could not render"""
    pass
