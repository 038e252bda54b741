"""Error types for iso-env.

All errors inherit from IsoError for easy catching at the command boundary.
Engine errors carry a category (not found, conflict) so callers can absorb
races against other writers without string matching.
"""

from __future__ import annotations


class IsoError(Exception):
    """Base class for all iso-env errors."""

    pass


class ConfigurationError(IsoError):
    """Raised when the project descriptor is missing or invalid."""

    pass


class EngineError(IsoError):
    """Raised when a container-engine operation fails."""

    def __init__(
        self,
        operation: str,
        resource: str,
        cause: Exception | str | None = None,
    ) -> None:
        self.operation = operation
        self.resource = resource
        self.cause = cause
        msg = f"{operation} '{resource}' failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class ResourceNotFoundError(EngineError):
    """Raised when the engine reports the resource does not exist."""

    pass


class ResourceConflictError(EngineError):
    """Raised when the resource already exists or an operation is in progress."""

    pass


class ImageBuildError(EngineError):
    """Raised when an image build fails. Carries the full build log."""

    def __init__(self, tag: str, log: str, cause: Exception | str | None = None) -> None:
        self.tag = tag
        self.log = log
        super().__init__("build image", tag, cause)


class ReadinessTimeoutError(IsoError):
    """Raised when a service port never becomes reachable."""

    def __init__(self, service: str, attempts: int) -> None:
        self.service = service
        self.attempts = attempts
        super().__init__(f"Service '{service}' not ready after {attempts} attempts")


class ExecCancelledError(IsoError):
    """Raised when a running exec is cancelled by the caller."""

    def __init__(self, exec_id: str) -> None:
        self.exec_id = exec_id
        super().__init__(f"Exec '{exec_id}' cancelled")


def is_race_absorbed(exc: BaseException) -> bool:
    """True for errors another writer can cause: already gone or already there."""
    return isinstance(exc, (ResourceNotFoundError, ResourceConflictError))
