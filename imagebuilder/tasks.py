"""Cancellable background work owned by a single step."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from imagebuilder.utils import log


class BackgroundTask:
    """Run ``target(stop_event)`` on a daemon thread until cancelled.

    The target must return promptly once ``stop_event`` is set. The owner calls
    ``cancel()`` followed by ``join()`` before it returns.
    """

    def __init__(self, name: str, target: Callable[[threading.Event], None]) -> None:
        self.name = name
        self._target = target
        self.stop_event = threading.Event()
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        try:
            self._target(self.stop_event)
        except Exception as exc:  # surfaced to the owner via .error
            self.error = exc
            log("DEBUG", f"Background task {self.name} failed: {exc}")

    def start(self) -> "BackgroundTask":
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        self.stop_event.set()

    def join(self, timeout: Optional[float] = 10.0) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            log("WARN", f"Background task {self.name} did not stop within {timeout}s")
            return False
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> bool:
        self.cancel()
        return self.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
