"""
Bulk-load progress observation

While a COPY statement blocks the loading thread, a poller thread reads
the warehouse query history for the statement's correlation tag and
reports rows produced so far.
"""

import threading
from typing import Any, Callable, Optional

import structlog

from ..exceptions import ProgressObservationError
from ..utils.sql_builder import SQLBuilder
from .database_service import DatabaseService


POLL_INTERVAL = 10.0

ProgressCallback = Callable[[int], None]


class LoadProgressPoller:
    """
    Scoped poller for one bulk-load statement

    Use as a context manager around exactly the blocking load call: the
    thread starts on enter and is stopped and joined on exit, so no poll
    runs after the block returns, whether it succeeded or raised.

    The history lookup runs on its own connection because the loading
    connection is busy with the COPY.
    """

    def __init__(self, database_service: DatabaseService, connection_name: str,
                 request_id: str, horizon: Any, callback: Optional[ProgressCallback],
                 interval: float = POLL_INTERVAL):
        self.database_service = database_service
        self.connection_name = connection_name
        self.request_tag = SQLBuilder.build_request_tag(request_id)
        self.horizon = horizon
        self.callback = callback
        self.interval = interval
        self.logger = structlog.get_logger()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.polls = 0

    def __enter__(self) -> 'LoadProgressPoller':
        if self.callback is not None:
            self._thread = threading.Thread(target=self._run, name="load-progress-poller", daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.stop()
        return False

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                rows = self.poll_once()
            except ProgressObservationError as e:
                self.logger.warning("Failed to observe load progress", request_tag=self.request_tag, error=str(e))
                continue
            if self._stop_event.is_set():
                break
            try:
                self.callback(rows)
            except Exception as e:
                self.logger.warning("Progress callback failed", error=str(e))

    def poll_once(self) -> int:
        """Sum the rows produced so far by statements carrying the request tag"""
        self.polls += 1
        try:
            result = self.database_service.execute_query(
                SQLBuilder.build_query_history_query(),
                (self.horizon, self.request_tag),
                connection_name=self.connection_name,
            )
        except Exception as e:
            raise ProgressObservationError(f"Query history lookup failed: {e}")
        return sum(int(row[0] or 0) for row in result)
