"""Linear step runner with halt-and-rollback semantics."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from imagebuilder.exceptions import BuildCancelled, BuildError, CorruptedStateError
from imagebuilder.utils import log

if TYPE_CHECKING:  # pragma: no cover
    from imagebuilder.artifact import Artifact
    from imagebuilder.config import BuildConfig
    from imagebuilder.definitions import DomainDefinition
    from imagebuilder.domain import CommunicatorAddressHelper
    from imagebuilder.session import HypervisorSession


class StepAction(Enum):
    CONTINUE = "continue"
    HALT = "halt"


class Outcome(Enum):
    SUCCEEDED = "succeeded"
    HALTED = "halted"
    HALTED_WITH_ERROR = "halted-with-error"
    HALTED_CANCELLED = "halted-cancelled"


@dataclass
class BuildState:
    """Everything the steps of one build share."""

    config: "BuildConfig"
    session: "HypervisorSession"
    domain_definition: "DomainDefinition"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    # set on a second cancellation; interrupts the graceful shutdown in cleanup
    force_event: threading.Event = field(default_factory=threading.Event)
    domain: Any = None
    shutdown_sent: bool = False
    domain_stopped: bool = False
    communicator_address_helper: Optional["CommunicatorAddressHelper"] = None
    communicator_host: Optional[str] = None
    artifact: Optional["Artifact"] = None
    generated_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    halted: bool = False
    cancelled: bool = False

    def require(self, name: str) -> Any:
        value = getattr(self, name, None)
        if value is None:
            raise CorruptedStateError(name)
        return value

    def halt_on_error(self, error) -> StepAction:
        if not isinstance(error, BaseException):
            error = BuildError(str(error))
        self.error = error
        log("ERROR", str(error))
        return StepAction.HALT

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise BuildCancelled()

    @property
    def rolled_back(self) -> bool:
        """True when the build stopped early and partial results must go."""
        return self.halted or self.cancelled


class Step:
    """One unit of the build: ``run`` does the work, ``cleanup`` undoes it."""

    name = "step"

    def run(self, state: BuildState) -> StepAction:
        raise NotImplementedError

    def cleanup(self, state: BuildState) -> None:
        pass


class BuildOrchestrator:
    """Run steps in order; on halt or cancel stop and clean up in reverse."""

    def __init__(self, steps: Sequence[Step]) -> None:
        self.steps: List[Step] = list(steps)

    def run(self, state: BuildState) -> Outcome:
        ran: List[Step] = []
        try:
            for step in self.steps:
                if state.cancel_event.is_set():
                    state.cancelled = True
                    break
                ran.append(step)
                log("DEBUG", f"Running step {step.name}")
                try:
                    action = step.run(state)
                except BuildCancelled:
                    state.cancelled = True
                    action = StepAction.HALT
                except Exception as exc:
                    action = state.halt_on_error(exc)
                if state.cancel_event.is_set():
                    state.cancelled = True
                if action is StepAction.HALT:
                    state.halted = True
                    break
                if state.cancelled:
                    break
        finally:
            for step in reversed(ran):
                log("DEBUG", f"Cleaning up step {step.name}")
                try:
                    step.cleanup(state)
                except Exception as exc:
                    log("ERROR", f"Cleanup of {step.name} failed: {exc}")
        return self.outcome(state)

    @staticmethod
    def outcome(state: BuildState) -> Outcome:
        if state.cancelled:
            return Outcome.HALTED_CANCELLED
        if state.error is not None:
            return Outcome.HALTED_WITH_ERROR
        if state.halted:
            return Outcome.HALTED
        return Outcome.SUCCEEDED
