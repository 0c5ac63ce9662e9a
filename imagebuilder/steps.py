"""The build steps, in the order the builder runs them."""

from __future__ import annotations

import socket
import time
from typing import Callable, List, Optional, Sequence

import libvirt  # type: ignore

from imagebuilder.artifact import Artifact
from imagebuilder.constants import (
    _LOG_VERBOSE,
    ALIAS_PREFIX,
    COMMUNICATOR_RETRY_INTERVAL,
    STATE_POLL_PERIOD,
    STREAM_CONSOLE_ALIAS,
)
from imagebuilder.domain import (
    SHUTDOWN_FLAGS,
    ConsoleStreamer,
    communicator_address,
    domain_state_means_stopped,
    make_address_helper,
    refresh_domain_definition,
)
from imagebuilder.exceptions import BuildCancelled, BuildError, CorruptedStateError, RPCError
from imagebuilder.poller import wait_for_stopped
from imagebuilder.preparation import PreparationContext
from imagebuilder.runner import BuildState, Step, StepAction
from imagebuilder.utils import log

Provisioner = Callable[[BuildState], None]


class StepPrepareVolumes(Step):
    name = "prepare-volumes"

    def __init__(self) -> None:
        self.preparations: List[PreparationContext] = []

    def run(self, state: BuildState) -> StepAction:
        self.preparations = []
        config = state.config
        log("INFO", "Preparing volumes...")
        for volume in config.volumes:
            state.check_cancelled()
            ctx = PreparationContext(state=state, volume=volume, is_artifact=config.is_artifact(volume))
            self.preparations.append(ctx)
            action = volume.prepare(ctx)
            if action is not StepAction.CONTINUE:
                return action
            state.domain_definition.add_disk(volume.disk_xml())
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        log("INFO", "Cleaning up volumes...")
        for ctx in self.preparations:
            log("DEBUG", f"Checking volume {ctx.label} for cleanup")
            if ctx.volume_ref is None or not ctx.created:
                continue
            if not ctx.is_artifact or state.rolled_back:
                log("INFO", f"Cleaning up volume {ctx.label}")
                try:
                    state.session.storage_vol_delete(ctx.volume_ref)
                except RPCError as exc:
                    log("ERROR", f"Couldn't clean up volume {ctx.label}: {exc}")
                continue
            try:
                state.session.storage_pool_refresh(ctx.pool)
            except RPCError as exc:
                log("DEBUG", f"Couldn't refresh pool {ctx.volume.pool}: {exc}")
            ctx.refresh_definition()
            state.artifact = Artifact(
                libvirt_uri=state.config.libvirt_uri,
                pool=ctx.volume.pool,
                volume_xml=ctx.definition.marshal(),
            )
            log("SUCCESS", f"Kept volume {ctx.label} as the build artifact")


def _start_console(state: BuildState) -> Optional[ConsoleStreamer]:
    if not (_LOG_VERBOSE and STREAM_CONSOLE_ALIAS):
        return None
    alias = ALIAS_PREFIX + STREAM_CONSOLE_ALIAS
    try:
        return ConsoleStreamer(state.session, state.domain, alias).start()
    except RPCError as exc:
        log("WARN", f"Couldn't stream console {alias}: {exc}")
        return None


def _domain_is_stopped(state: BuildState) -> bool:
    try:
        current, _ = state.session.domain_get_state(state.domain)
    except RPCError as exc:
        log("DEBUG", f"Couldn't read domain state: {exc}")
        return False
    return domain_state_means_stopped(current)


class StepCreateDomain(Step):
    """Register and boot a transient domain in one call."""

    name = "create-domain"

    def __init__(self) -> None:
        self._console: Optional[ConsoleStreamer] = None

    def run(self, state: BuildState) -> StepAction:
        session = state.session
        xml = state.domain_definition.marshal()
        log("DEBUG", f"domain definition XML:\n{xml}")
        flags = 0 if session.is_test_driver else libvirt.VIR_DOMAIN_START_AUTODESTROY
        try:
            state.domain = session.domain_create_xml(xml, flags)
        except RPCError as exc:
            return state.halt_on_error(exc)
        log("SUCCESS", f"Domain {state.config.domain_name} started")

        refresh_domain_definition(state)
        self._console = _start_console(state)
        state.communicator_address_helper = make_address_helper(state)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._console is not None:
            self._console.stop()
            self._console = None
        if state.domain is None:
            return
        if state.domain_stopped or _domain_is_stopped(state):
            log("DEBUG", "Domain already stopped, nothing to destroy")
            return
        log("INFO", f"Destroying domain {state.config.domain_name}")
        try:
            state.session.domain_destroy(state.domain)
        except RPCError as exc:
            log("ERROR", f"error during domain cleanup: {exc}")


class StepDefineDomain(Step):
    """Register a persistent domain without starting it."""

    name = "define-domain"

    def run(self, state: BuildState) -> StepAction:
        log("INFO", "Sending the domain definition to libvirt")
        xml = state.domain_definition.marshal()
        log("DEBUG", f"domain definition XML:\n{xml}")
        try:
            state.domain = state.session.domain_define_xml(xml)
        except RPCError as exc:
            return state.halt_on_error(exc)
        refresh_domain_definition(state)
        state.communicator_address_helper = make_address_helper(state)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if state.domain is None:
            return
        log("INFO", "Undefining the domain...")
        try:
            state.session.domain_undefine(state.domain)
        except RPCError as exc:
            log("ERROR", f"error while undefining domain: {exc}")
        state.domain = None


class StepStartDomain(Step):
    name = "start-domain"

    def __init__(self, period: float = STATE_POLL_PERIOD) -> None:
        self.period = period
        self._console: Optional[ConsoleStreamer] = None

    def run(self, state: BuildState) -> StepAction:
        domain = state.require("domain")
        log("INFO", "Starting the libvirt domain")
        try:
            state.session.domain_create(domain)
        except RPCError as exc:
            return state.halt_on_error(exc)
        log("SUCCESS", f"Domain {state.config.domain_name} started")
        self._console = _start_console(state)
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._console is not None:
            self._console.stop()
            self._console = None
        if state.domain is None or state.domain_stopped or _domain_is_stopped(state):
            log("DEBUG", "Domain already stopped")
            return

        if state.shutdown_sent:
            log("DEBUG", "Shutdown already sent, skipping graceful shutdown")
        else:
            # a first cancellation must not cut this short, a second one does
            try:
                state.session.domain_shutdown_flags(state.domain, SHUTDOWN_FLAGS[state.config.shutdown_mode])
                wait_for_stopped(
                    state.session,
                    state.domain,
                    state.config.shutdown_timeout,
                    state.force_event,
                    period=self.period,
                )
                log("INFO", "Domain gracefully stopped")
                return
            except BuildError as exc:
                log("ERROR", f"Graceful shutdown failed: {exc}")

        try:
            state.session.domain_destroy(state.domain)
        except RPCError as exc:
            log("ERROR", f"error during domain cleanup: {exc}")


class StepConnectCommunicator(Step):
    """Wait until the communicator port of the domain accepts connections."""

    name = "connect-communicator"

    def __init__(self, retry_interval: float = COMMUNICATOR_RETRY_INTERVAL) -> None:
        self.retry_interval = retry_interval

    def _check_port(self, host: str, port: int) -> None:
        with socket.create_connection((host.strip("[]"), port), timeout=5):
            pass

    def run(self, state: BuildState) -> StepAction:
        comm = state.config.communicator
        log("INFO", f"Waiting for {comm.type} to become available...")
        deadline = time.monotonic() + comm.timeout
        last_error: Optional[Exception] = None
        while True:
            state.check_cancelled()
            try:
                host = communicator_address(state)
                self._check_port(host, comm.port)
            except CorruptedStateError:
                raise
            except (BuildError, OSError) as exc:
                last_error = exc
                log("DEBUG", f"{comm.type} not ready yet: {exc}")
            else:
                state.communicator_host = host
                state.generated_data["Host"] = host
                state.generated_data["Port"] = comm.port
                log("SUCCESS", f"Connected to {comm.type} at {host}:{comm.port}")
                return StepAction.CONTINUE
            if time.monotonic() >= deadline:
                return state.halt_on_error(f"Timeout waiting for {comm.type}: {last_error}")
            state.cancel_event.wait(self.retry_interval)


class StepProvision(Step):
    name = "provision"

    def __init__(self, provisioners: Sequence[Provisioner] = ()) -> None:
        self.provisioners = list(provisioners)

    def run(self, state: BuildState) -> StepAction:
        for provisioner in self.provisioners:
            state.check_cancelled()
            label = getattr(provisioner, "__name__", repr(provisioner))
            log("INFO", f"Running provisioner {label}")
            try:
                provisioner(state)
            except BuildCancelled:
                raise
            except Exception as exc:
                return state.halt_on_error(f"provisioner {label} failed: {exc}")
        return StepAction.CONTINUE


class StepShutdownDomain(Step):
    name = "shutdown-domain"

    def __init__(self, period: float = STATE_POLL_PERIOD) -> None:
        self.period = period

    def run(self, state: BuildState) -> StepAction:
        domain = state.require("domain")
        config = state.config
        log("INFO", "Shutting down libvirt domain...")
        try:
            state.session.domain_shutdown_flags(domain, SHUTDOWN_FLAGS[config.shutdown_mode])
        except RPCError as exc:
            return state.halt_on_error(f"couldn't shut down domain gracefully: {exc}")
        state.shutdown_sent = True

        try:
            wait_for_stopped(
                state.session,
                domain,
                config.shutdown_timeout,
                state.cancel_event,
                period=self.period,
            )
        except BuildCancelled:
            raise
        except BuildError as exc:
            return state.halt_on_error(exc)
        state.domain_stopped = True
        log("SUCCESS", "Domain gracefully stopped")
        return StepAction.CONTINUE
