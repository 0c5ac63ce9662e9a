"""Top-level build entry point: prepare the config, then run the steps."""

from __future__ import annotations

import threading
from typing import List, Optional, Sequence

from imagebuilder.artifact import Artifact
from imagebuilder.config import BuildConfig
from imagebuilder.devices import DeviceLetterAllocator
from imagebuilder.domain import build_domain_definition
from imagebuilder.exceptions import BuildCancelled, BuildError
from imagebuilder.runner import BuildOrchestrator, BuildState, Outcome, Step
from imagebuilder.session import connect
from imagebuilder.steps import (
    Provisioner,
    StepConnectCommunicator,
    StepCreateDomain,
    StepDefineDomain,
    StepPrepareVolumes,
    StepProvision,
    StepShutdownDomain,
    StepStartDomain,
)
from imagebuilder.utils import log


class Builder:
    def __init__(self, config: BuildConfig, provisioners: Sequence[Provisioner] = ()) -> None:
        self.config = config
        self.provisioners = list(provisioners)
        self.cancel_event = threading.Event()
        self.force_event = threading.Event()
        # device names are handed out per build, never shared between builders
        self.letters = DeviceLetterAllocator()
        self.state: Optional[BuildState] = None
        self.outcome: Optional[Outcome] = None

    def prepare(self) -> List[str]:
        return self.config.prepare(self.letters)

    def steps(self) -> List[Step]:
        steps: List[Step] = [StepPrepareVolumes()]
        if self.config.persistent_domain:
            steps += [StepDefineDomain(), StepStartDomain()]
        else:
            steps.append(StepCreateDomain())
        if self.config.communicator.type == "none":
            log("INFO", "No communicator configured, skipping connection to the domain")
        else:
            steps.append(StepConnectCommunicator())
        steps.append(StepProvision(self.provisioners))
        if self.config.graceful_shutdown:
            steps.append(StepShutdownDomain())
        return steps

    def cancel(self) -> None:
        if self.cancel_event.is_set():
            log("WARN", "Cancellation requested again, forcing the domain off")
            self.force_event.set()
            return
        log("WARN", "Cancellation requested, rolling back...")
        self.cancel_event.set()

    def run(self) -> Optional[Artifact]:
        """Run the build and return its artifact.

        Raises the recorded step error, :class:`BuildCancelled` or
        :class:`BuildError` when the build did not succeed.
        """
        session = connect(self.config.libvirt_uri)
        try:
            state = BuildState(
                config=self.config,
                session=session,
                domain_definition=build_domain_definition(self.config),
                cancel_event=self.cancel_event,
                force_event=self.force_event,
            )
            self.state = state
            self.outcome = BuildOrchestrator(self.steps()).run(state)
        finally:
            session.close()

        if self.outcome is Outcome.HALTED_CANCELLED:
            raise BuildCancelled()
        if self.outcome is Outcome.HALTED_WITH_ERROR:
            raise state.error
        if self.outcome is Outcome.HALTED:
            raise BuildError("build was halted")
        if state.artifact is None:
            log("WARN", "Build finished without producing an artifact")
            return None
        return state.artifact.with_generated_data(state.generated_data)
