"""Shared exceptions for the worker.

Every failure that can happen inside one task pipeline is a subclass of
WorkerError, so the scheduler can contain it to that pipeline. Only
ConfigurationError is fatal, and only at startup.

Taxonomy:
    NoWorkAvailable: coordinator had nothing to hand out (expected, drives backoff)
    ProtocolViolation: coordinator answered with a task we cannot use
    ArtifactIOError: preset write or artifact open/read failed
    ExecutionFailure: the transcoding tool failed, could not start, or timed out
    TransportError: a coordinator request failed or was rejected
    ShutdownRequested: a blocking call was interrupted by the shutdown signal
"""


class WorkerError(Exception):
    """Base class for failures contained to a single polling cycle or pipeline."""

    pass


class ConfigurationError(Exception):
    """Raised when startup configuration is missing or invalid.

    This is the only process-fatal error: the entry point logs it and
    exits with status 1 before any coordinator call is made.
    """

    pass


class NoWorkAvailable(WorkerError):
    """Raised when the coordinator answers the acquire call with a non-200 status.

    Attributes:
        status_code: HTTP status returned by the coordinator.
    """

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"no work available (status {status_code})")


class ProtocolViolation(WorkerError):
    """Raised when an acquire response cannot be turned into a usable Task.

    Covers undecodable bodies, wrongly typed fields and empty or unsafe ids.
    Treated like NoWorkAvailable for backoff, but logged as a warning.
    """

    pass


class ArtifactIOError(WorkerError):
    """Raised when the preset file or the output artifact cannot be written or read.

    Attributes:
        path: Filesystem path involved, if known.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)


class ExecutionFailure(WorkerError):
    """Raised when the external tool cannot be run to a successful exit.

    Attributes:
        command: Exact invocation string, for reproducing the failure by hand
            (empty when the command was rejected before spawning).
        exit_code: Process exit code, or None if the process never exited normally.
    """

    def __init__(self, message: str, command: str = "", exit_code: int | None = None) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        if self.command:
            return f"{base_message} (command: {self.command})"
        return base_message


class TransportError(WorkerError):
    """Raised when a coordinator request fails to send or is rejected.

    Attributes:
        status_code: HTTP status, or None when no response was received.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ShutdownRequested(WorkerError):
    """Raised when a blocking operation is interrupted by the shutdown signal."""

    pass
