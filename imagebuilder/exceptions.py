"""Custom exceptions for imagebuilder."""

from __future__ import annotations

from typing import Iterable, List, Optional


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(BuildError):
    """One or more configuration problems, reported together."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = [str(err) for err in errors]
        if len(self.errors) == 1:
            message = self.errors[0]
        else:
            message = f"{len(self.errors)} configuration errors:\n" + "\n".join(
                f"  * {err}" for err in self.errors
            )
        super().__init__(message)


class MalformedURIError(ConfigurationError):
    def __init__(self, uri: str) -> None:
        super().__init__([f"malformed libvirt URI: '{uri}'"])
        self.uri = uri


class HypervisorConnectionError(BuildError):
    """Transport, authentication or certificate failure."""


class RPCError(BuildError):
    """A libvirt daemon call failed."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class PollTimeoutError(BuildError):
    """The domain did not reach a terminal state before the deadline."""


class PollCrashError(BuildError):
    """The domain crashed while a graceful shutdown was awaited."""


class BuildCancelled(BuildError):
    """The build was cancelled from outside."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "build was cancelled")


class CorruptedStateError(BuildError):
    """A step needed a build-state entry that no earlier step provided."""

    def __init__(self, key: str) -> None:
        super().__init__(f"build state is missing '{key}'; it must be set by an earlier step")
        self.key = key
