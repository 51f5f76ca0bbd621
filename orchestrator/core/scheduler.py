"""Background clock driving timers, schedule triggers and retention."""

import threading
from datetime import timedelta
from typing import Optional

from ..models import utcnow
from .exceptions import WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class ClockTicker:
    """Daemon thread calling ``tick`` on the engine and the trigger dispatcher.

    Retention runs every ``cleanup_interval`` seconds and purges terminal
    instances older than ``retention_days`` when a retention is configured.
    """

    def __init__(self, engine, triggers, registry, interval: float = 1.0,
                 cleanup_interval: float = 3600.0, retention_days: Optional[int] = None):
        self.engine = engine
        self.triggers = triggers
        self.registry = registry
        self.interval = interval
        self.cleanup_interval = cleanup_interval
        self.retention_days = retention_days
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_cleanup = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="WorkflowClockTicker")
        self._thread.start()
        logger.info(f"Clock ticker started (interval={self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Clock ticker stopped")

    def tick_once(self) -> None:
        """Run one tick synchronously."""
        now = utcnow()
        self.engine.tick(now)
        self.triggers.tick(now)
        if self.retention_days is None:
            return
        if self._last_cleanup is None or (now - self._last_cleanup).total_seconds() >= self.cleanup_interval:
            self._last_cleanup = now
            self.registry.purge_instances(now - timedelta(days=self.retention_days))

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.tick_once()
            except WorkflowEngineError as e:
                logger.error(f"Clock tick failed: {e.message}")
            except Exception as e:
                logger.exception(f"Unexpected error in clock tick: {e}")
