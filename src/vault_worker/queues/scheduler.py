"""
Background tickers.

A Ticker runs a callable on its own thread at a fixed interval. Waiting is
done on a threading.Event, so stop() interrupts the wait, and stop() joins
the thread: once it returns, no tick is running.
"""

import logging
import threading
from collections.abc import Callable
from typing import Optional

logger = logging.getLogger(__name__)


class Ticker:
    """Run fn every interval seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], object],
        error_interval: Optional[float] = None,
    ):
        """
        Args:
            name: Thread name (shows up in logs)
            interval: Seconds to wait between ticks
            fn: Tick body; exceptions are logged, never propagated
            error_interval: Wait after a failed tick (defaults to interval)
        """
        self.name = name
        self.interval = interval
        self.error_interval = error_interval if error_interval is not None else interval
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Started ticker {self.name} (every {self.interval}s)")

    def _run(self) -> None:
        while not self._stop.is_set():
            wait = self.interval
            try:
                self._fn()
            except Exception as e:
                logger.exception(f"Error in ticker {self.name}: {e}")
                wait = self.error_interval
            self._stop.wait(wait)
        logger.info(f"Ticker {self.name} stopped")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the ticker to stop and wait for the current tick to end."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Ticker {self.name} did not stop within {timeout}s")
            self._thread = None
