"""Timer-driven background loop shared by the watchers and the generator."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, Tuple, Type

from sqlalchemy.exc import SQLAlchemyError

from middleware_manager.fetchers import FetchError

logger = logging.getLogger(__name__)


class PollingLoop(ABC):
    """Runs `tick()` now and then every `interval` seconds until stopped.

    Ticks never overlap: the next wait only starts once the previous tick
    returned. A failed tick is logged and retried on the next interval.
    """

    # Failures that are part of normal operation and logged without traceback.
    expected_errors: Tuple[Type[BaseException], ...] = (FetchError, SQLAlchemyError, OSError)

    def __init__(self, name: str, interval: float):
        self.name = name
        self.interval = interval
        self._lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @abstractmethod
    def tick(self) -> None:
        """One unit of work. Raise to report failure."""
        pass

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def run_once(self) -> bool:
        """Run a single tick, returning False if it failed."""
        try:
            self.tick()
            return True
        except self.expected_errors as e:
            logger.error(f"{self.name} failed: {e}")
        except Exception as e:
            logger.error(f"{self.name} failed unexpectedly: {e}", exc_info=True)
        return False

    def start(self) -> bool:
        """Start the loop thread. Returns False if it was already running."""
        with self._lock:
            if self._running:
                return False
            self._running = True
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run, args=(stop_event,), name=self.name, daemon=True
            )
            thread = self._thread
        logger.info(f"{self.name} started, running every {self.interval}s")
        thread.start()
        return True

    def stop(self, join: bool = False, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit.

        An in-flight tick is not interrupted; its network calls are bounded
        by their own timeouts. Pass join=True to wait for the thread.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            thread = self._thread
        if join and thread is not None:
            thread.join(timeout)

    def _run(self, stop_event: threading.Event) -> None:
        self.run_once()
        while not stop_event.wait(self.interval):
            self.run_once()
        logger.info(f"{self.name} stopped")
