from __future__ import annotations

import logging
import threading
from typing import Callable

from campaign_ingest.domain.outcomes import IngestionResult
from campaign_ingest.models.events import CampaignEventIn
from campaign_ingest.observability import log_event
from campaign_ingest.services.orphan_queue import OrphanedEventQueue


class RetryScheduler:
    """Background thread that runs an orphan queue retry cycle every ``interval_seconds``."""

    def __init__(
        self,
        queue: OrphanedEventQueue,
        processor: Callable[[CampaignEventIn], IngestionResult],
        *,
        interval_seconds: float = 10.0,
        drain_timeout_seconds: float = 30.0,
    ):
        self._queue = queue
        self._processor = processor
        self._interval_seconds = max(0.01, interval_seconds)
        self._drain_timeout_seconds = drain_timeout_seconds
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="orphan-retry-scheduler", daemon=True)
        self._thread.start()
        log_event("orphan_retry_scheduler_started", interval_seconds=self._interval_seconds)

    def trigger(self) -> None:
        self._wake.set()

    def stop(self, *, drain: bool = True) -> None:
        thread = self._thread
        self._stop.set()
        self._wake.set()
        if thread is not None:
            # join returns once the in-flight cycle, if any, has finished
            thread.join()
        self._thread = None
        if drain:
            self._queue.drain(self._processor, timeout_seconds=self._drain_timeout_seconds)
        log_event("orphan_retry_scheduler_stopped", drained=drain)

    def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self._interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                self._queue.process_cycle(self._processor)
            except Exception as exc:
                log_event(
                    "orphan_retry_cycle_failed",
                    level=logging.ERROR,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
