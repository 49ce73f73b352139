"""
Periodic overstay sweep on a background thread.
"""

import logging
import threading
from typing import Optional

from evisit.database.risk_service import OverstaySweepReport, OverstaySweepService

logger = logging.getLogger(__name__)


class OverstaySweeper:
    """Runs OverstaySweepService.detect_and_flag_overstays every interval_seconds."""

    def __init__(self, service: OverstaySweepService, interval_seconds: int = 3600):
        self._service = service
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[OverstaySweepReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[OverstaySweepReport]:
        try:
            self.last_report = self._service.detect_and_flag_overstays()
        except Exception:
            logger.exception("Overstay sweep run failed")
            return None
        return self.last_report

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="evisit-overstay-sweep", daemon=True)
        self._thread.start()
        logger.info("Overstay sweeper started (every %ds)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Overstay sweeper stopped")
