from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from app.metrics import observe_scheduler_tick

logger = logging.getLogger("app.automation.scheduler")
tracer = trace.get_tracer("app.automation.scheduler")


class PeriodicScheduler:
    """Runs ``tick`` every ``interval_seconds`` on one background thread.

    Ticks never overlap: a tick that comes due while another is still running
    is skipped. ``stop`` lets an in-flight tick finish and returns only once the
    thread has exited, so no tick starts after it returns.
    """

    def __init__(
        self,
        tick: Callable[[], Any],
        interval_seconds: float = 60.0,
        *,
        name: str = "automation-scheduler",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._tick = tick
        self.interval_seconds = interval_seconds
        self.name = name
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(target=self._run, args=(self._stop_event,), name=self.name, daemon=True)
            self._thread.start()
        logger.info("automation_scheduler_started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float | None = None) -> None:
        with self._state_lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("automation_scheduler_stopped", extra={"interval_seconds": self.interval_seconds})

    def run_once(self) -> bool:
        if not self._tick_lock.acquire(blocking=False):
            observe_scheduler_tick("skipped")
            logger.warning("automation_scheduler_tick_skipped", extra={"reason": "busy"})
            return False
        try:
            with tracer.start_as_current_span("automation.scheduler.tick") as span:
                try:
                    self._tick()
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))
                    observe_scheduler_tick("failed")
                    logger.exception("automation_scheduler_tick_failed", extra={"error": str(exc)})
                    return False
            observe_scheduler_tick("succeeded")
            return True
        finally:
            self._tick_lock.release()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            if stop_event.is_set():
                break
            self.run_once()
