"""
Replication mode and phase models
"""

from enum import Enum

from ..exceptions import ConfigurationError


class RunMode(Enum):
    """Which parts of the replication job to run"""
    FULL = "full"
    SNAPSHOT_ONLY = "snapshot-only"
    INCREMENTAL_ONLY = "incremental-only"

    @classmethod
    def parse(cls, value) -> 'RunMode':
        """Parse mode from a case-insensitive string"""
        if isinstance(value, RunMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(mode.value for mode in cls)
            raise ConfigurationError(f"Unknown mode '{value}', expected one of: {choices}")

    @property
    def includes_snapshot(self) -> bool:
        return self in (RunMode.FULL, RunMode.SNAPSHOT_ONLY)

    @property
    def includes_incremental(self) -> bool:
        return self in (RunMode.FULL, RunMode.INCREMENTAL_ONLY)


class ReplicationPhase(Enum):
    """Coarse phase of a replication job, derived from durable markers"""
    NOT_STARTED = "not-started"
    SNAPSHOT_LOADED = "snapshot-loaded"
    INCREMENTAL_RUNNING = "incremental-running"

    @classmethod
    def from_markers(cls, snapshot_loaded: bool, capture_registered: bool) -> 'ReplicationPhase':
        """Derive the phase from the two marker probes.

        A registered capture job takes precedence over the load marker.
        """
        if capture_registered:
            return cls.INCREMENTAL_RUNNING
        if snapshot_loaded:
            return cls.SNAPSHOT_LOADED
        return cls.NOT_STARTED
