"""Error taxonomy for the intake pipeline."""

from models import ErrorKind


class IntakeError(Exception):
    """Base class for every failure the intake pipeline reports."""

    kind: ErrorKind


class ValidationError(IntakeError):
    """File or input rejected locally, before any network call."""

    kind = ErrorKind.VALIDATION


class IntakeTimeoutError(IntakeError, TimeoutError):
    """A remote call did not finish within its local deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


class AbortedError(IntakeError):
    """The caller cancelled the operation through its cancel token."""

    kind = ErrorKind.ABORTED

    def __init__(self, operation: str, reason: str = "aborted"):
        super().__init__(f"{operation} aborted ({reason})")
        self.operation = operation
        self.reason = reason


class RemoteError(IntakeError):
    """The remote service answered with a non-success outcome."""

    kind = ErrorKind.REMOTE

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion or None
        self.status_code = status_code

    @property
    def user_message(self) -> str:
        if self.suggestion:
            return f"{self.message}\n\n{self.suggestion}"
        return self.message


class ParseError(IntakeError):
    """A success response whose body is not the expected shape."""

    kind = ErrorKind.PARSE


class InvalidTransition(ValueError):
    """An event that is not legal in the session's current stage."""
