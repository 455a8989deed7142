"""
Durable job markers kept in the workspace
"""

import json
from typing import Any, Dict, Optional

import structlog

from ..models.state import ReplicationPhase
from .storage_service import WorkspaceStorage


SNAPSHOT_LOADED_MARKER = "snapshot/loadinfo"
CAPTURE_REGISTERED_MARKER = "increment/metadata"
CHANGEFEED_RECORD = "capture/changefeed"


class MarkerStore:
    """Reads and writes the markers that make a job restartable"""

    def __init__(self, storage: WorkspaceStorage):
        self.storage = storage
        self.logger = structlog.get_logger()

    def snapshot_loaded(self) -> bool:
        return self.storage.exists(SNAPSHOT_LOADED_MARKER)

    def capture_registered(self) -> bool:
        """True once the change-capture service has written its metadata file"""
        return self.storage.exists(CAPTURE_REGISTERED_MARKER)

    def phase(self) -> ReplicationPhase:
        return ReplicationPhase.from_markers(
            snapshot_loaded=self.snapshot_loaded(),
            capture_registered=self.capture_registered(),
        )

    def mark_snapshot_loaded(self, payload: Dict[str, Any]) -> None:
        """Write the load-finished marker; called only after every part loaded"""
        self.storage.write_text(SNAPSHOT_LOADED_MARKER, json.dumps(payload, sort_keys=True))
        self.logger.info("Snapshot load marker written", url=self.storage.url_for(SNAPSHOT_LOADED_MARKER))

    def read_snapshot_info(self) -> Optional[Dict[str, Any]]:
        if not self.snapshot_loaded():
            return None
        return json.loads(self.storage.read_text(SNAPSHOT_LOADED_MARKER))

    def mark_changefeed_created(self, payload: Dict[str, Any]) -> None:
        """
        Record a successful changefeed registration

        The change-capture service writes its own metadata only after its
        first flush, so this record is what stops a rerun from registering
        a second changefeed into the same sink.
        """
        self.storage.write_text(CHANGEFEED_RECORD, json.dumps(payload, sort_keys=True))
        self.logger.info("Changefeed record written", url=self.storage.url_for(CHANGEFEED_RECORD))

    def read_changefeed_record(self) -> Optional[Dict[str, Any]]:
        if not self.storage.exists(CHANGEFEED_RECORD):
            return None
        return json.loads(self.storage.read_text(CHANGEFEED_RECORD))
