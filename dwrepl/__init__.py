"""
dwrepl - replicate a TiDB table into a cloud warehouse

A consistent snapshot is bulk-loaded first, then row-level changes
captured to object storage are merged continuously.
"""

__version__ = "1.0.0"

from .exceptions import (
    ReplicationException,
    ConfigurationError,
    ConnectivityError,
    UnsupportedDDLError,
    MergeError,
    BulkLoadError,
    SnapshotFilesNotFoundError,
    DegradedTranslationWarning
)
from .models import ReplicationConfig, ReplicationPhase, RunMode
from .orchestrator import ReplicationOrchestrator

__all__ = [
    'ReplicationException',
    'ConfigurationError',
    'ConnectivityError',
    'UnsupportedDDLError',
    'MergeError',
    'BulkLoadError',
    'SnapshotFilesNotFoundError',
    'DegradedTranslationWarning',
    'ReplicationConfig',
    'ReplicationPhase',
    'RunMode',
    'ReplicationOrchestrator'
]
