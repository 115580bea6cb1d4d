"""Application-level error types."""

from __future__ import annotations


class RemakeError(Exception):
    """Base error for remake."""


class PlanError(RemakeError):
    """Raised when plan loading/validation fails."""


class CycleError(PlanError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        path = " -> ".join([*self.cycle, self.cycle[0]]) if self.cycle else "(unknown)"
        super().__init__(f"Plan has cyclic dependencies: {path}")


class UnknownReferenceError(PlanError):
    """Raised when a target refers to a name that is neither a target nor a known symbol."""

    def __init__(self, target: str, name: str) -> None:
        self.target = target
        self.name = name
        super().__init__(f"target '{target}' references unknown name '{name}'")


class MissingInputError(RemakeError):
    """Raised when a declared input file does not exist."""

    def __init__(self, target: str, path: str) -> None:
        self.target = target
        self.path = path
        super().__init__(f"target '{target}' declares missing input file: {path}")


class TransientError(RemakeError):
    """Raise from build code to request a retry of the target."""


class BuildError(RemakeError):
    """Raised when a target build fails."""

    def __init__(
        self,
        target: str,
        cause: str,
        *,
        retryable: bool = False,
        timed_out: bool = False,
    ) -> None:
        self.target = target
        self.cause = cause
        self.retryable = retryable
        self.timed_out = timed_out
        super().__init__(f"target '{target}' failed: {cause}")

    def __reduce__(self) -> tuple[object, ...]:
        return (_rebuild_build_error, (self.target, self.cause, self.retryable, self.timed_out))


def _rebuild_build_error(target: str, cause: str, retryable: bool, timed_out: bool) -> BuildError:
    return BuildError(target, cause, retryable=retryable, timed_out=timed_out)


class CacheError(RemakeError):
    """Raised when the fingerprint cache cannot be read or written."""


class StateError(RemakeError):
    """Raised when run state cannot be loaded."""


class RunConflictError(RemakeError):
    """Raised when the cache is locked by another process."""
