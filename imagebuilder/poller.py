"""Domain state polling with a deadline and cancellation."""

from __future__ import annotations

import queue
import threading
import time
from typing import Callable, Optional

import libvirt  # type: ignore

from imagebuilder.constants import STATE_POLL_PERIOD
from imagebuilder.domain import domain_state_means_stopped
from imagebuilder.exceptions import BuildCancelled, BuildError, PollCrashError, PollTimeoutError, RPCError
from imagebuilder.tasks import BackgroundTask
from imagebuilder.utils import log

_HANDOFF_WAIT = 0.1


class DomainStatePoller:
    """Report domain states on ``states`` and a failure on ``errors``.

    Both channels hold one item; the poller blocks until the consumer takes
    it, and gives up as soon as it is cancelled. Polling ends after the first
    terminal state or error.
    """

    def __init__(self, session, domain, period: float = STATE_POLL_PERIOD) -> None:
        self.session = session
        self.domain = domain
        self.period = period
        self.states: "queue.Queue[int]" = queue.Queue(maxsize=1)
        self.errors: "queue.Queue[BaseException]" = queue.Queue(maxsize=1)
        self._task = BackgroundTask("domain-state-poller", self._poll)

    @staticmethod
    def _offer(channel: queue.Queue, item, stop: threading.Event) -> bool:
        while not stop.is_set():
            try:
                channel.put(item, timeout=_HANDOFF_WAIT)
                return True
            except queue.Full:
                continue
        return False

    def _poll(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                state, reason = self.session.domain_get_state(self.domain)
            except RPCError as exc:
                self._offer(self.errors, exc, stop)
                return
            log("DEBUG", f"DomainGetState: state({state}) reason({reason})")
            if not self._offer(self.states, state, stop):
                return
            if domain_state_means_stopped(state) or stop.wait(self.period):
                return

    def start(self) -> "DomainStatePoller":
        self._task.start()
        return self

    def stop(self) -> None:
        self._task.stop()


def wait_for_stopped(
    session,
    domain,
    timeout: float,
    cancel_event: threading.Event,
    period: float = STATE_POLL_PERIOD,
    on_state: Optional[Callable[[int], None]] = None,
) -> int:
    """Block until the domain is shut off.

    Raises :class:`PollCrashError` if it crashed instead,
    :class:`PollTimeoutError` when ``timeout`` elapses first and
    :class:`BuildCancelled` once ``cancel_event`` is set.
    """
    poller = DomainStatePoller(session, domain, period).start()
    deadline = time.monotonic() + timeout
    try:
        while True:
            if cancel_event.is_set():
                raise BuildCancelled("cancelled while waiting for the domain to stop")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PollTimeoutError(f"Domain did not stop within {timeout:.0f}s")
            try:
                error = poller.errors.get_nowait()
            except queue.Empty:
                pass
            else:
                raise BuildError(f"error while waiting for a clean shutdown: {error}") from error
            try:
                state = poller.states.get(timeout=min(_HANDOFF_WAIT, remaining))
            except queue.Empty:
                continue
            if on_state is not None:
                on_state(state)
            if domain_state_means_stopped(state):
                if state == libvirt.VIR_DOMAIN_CRASHED:
                    raise PollCrashError("Domain crashed while waiting for a graceful shutdown")
                return state
    finally:
        poller.stop()
