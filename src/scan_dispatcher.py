"""
Serialized scan dispatch.

Scanner input can arrive from several sources (keyboard wedge, camera
thread, network scanner). The dispatcher funnels all of them through one
FIFO worker so the engine sees scans strictly in arrival order, each
running to completion before the next starts.
"""

from typing import Callable, List, Optional

from logger import get_logger
from reconciliation_engine import ReconciliationEngine
from serial_worker import SerialWorker

logger = get_logger(__name__)

EventsCallback = Callable[[str, List[object]], None]


class ScanDispatcher:
    """
    Queue in front of ReconciliationEngine.scan().

    Args:
        engine: Engine that applies the scans
        on_events: Optional callback(raw, events) invoked on the worker thread
                   after each scan
        sync_mode: Apply scans inside submit() (tests)
    """

    def __init__(self, engine: ReconciliationEngine,
                 on_events: Optional[EventsCallback] = None,
                 sync_mode: bool = False):
        self.engine = engine
        self.on_events = on_events
        self._worker = SerialWorker(name="scan-dispatch", sync_mode=sync_mode)

    def submit(self, raw: str) -> bool:
        """
        Queue a raw scan. Returns False if the dispatcher has been shut down.
        """
        def job():
            events = self.engine.scan(raw)
            if self.on_events is not None:
                self.on_events(raw, events)

        return self._worker.submit(job)

    def pending(self) -> int:
        return self._worker.pending()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued scan has been applied."""
        return self._worker.flush(timeout=timeout)

    def shutdown(self) -> None:
        """Apply queued scans, then stop accepting new ones."""
        logger.debug(f"Shutting down scan dispatcher ({self.pending()} pending)")
        self._worker.shutdown()
