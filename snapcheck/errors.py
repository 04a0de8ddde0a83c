"""
Error classes for snapcheck.

The orchestrator catches SnapcheckError at the task boundary, so any of
these aborts only the task (or plugin) it was raised for:
- ConfigError: missing or malformed task file / harness config
- ResolutionError: plugin artifact could not be located or downloaded
- CommandError: the daemon CLI explicitly rejected a command
- ApiError: the daemon HTTP API returned unusable data
- VerificationError: observed daemon state differs from the task file
- PollTimeoutError: state never became consistent within the retry budget

PollTimeoutError is kept apart from CommandError so callers can report
"never became consistent" separately from "explicitly rejected".
"""

from typing import Any, Iterable, Optional


class SnapcheckError(Exception):
    """Base exception for snapcheck."""
    pass


class ConfigError(SnapcheckError):
    """Configuration or task definition error."""
    pass


class TaskFileNotFoundError(ConfigError, FileNotFoundError):
    """Task definition file does not exist."""
    pass


class TaskParseError(ConfigError):
    """Task definition content is not valid in the requested format."""
    pass


class ResolutionError(SnapcheckError):
    """No local artifact and the remote artifact could not be fetched."""

    def __init__(self, message: str, dependency: Any = None, url: Optional[str] = None):
        super().__init__(message)
        self.dependency = dependency
        self.url = url


class CommandError(SnapcheckError):
    """
    A CLI invocation returned an unexpected result.

    The captured stdout/stderr are included in the message.
    """

    def __init__(self, message: str, result: Any = None):
        self.result = result
        if result is not None:
            message = f"{message}\n{_describe_result(result)}"
        super().__init__(message)


class ApiError(SnapcheckError):
    """Malformed or empty HTTP API response."""

    def __init__(self, message: str, url: Optional[str] = None, body: Optional[str] = None):
        self.url = url
        self.body = body
        if body:
            message = f"{message}\nresponse body: {body[:2000]}"
        super().__init__(message)


class VerificationError(SnapcheckError):
    """Observed daemon state does not match the task definition."""

    def __init__(self, message: str, missing: Iterable[str] = ()):
        self.missing = sorted(missing)
        if self.missing:
            message = f"{message}: missing {', '.join(self.missing)}"
        super().__init__(message)


class PollTimeoutError(SnapcheckError, TimeoutError):
    """Retry budget exhausted without the action succeeding."""

    def __init__(self, message: str, last_result: Any = None):
        self.last_result = last_result
        if last_result is not None and hasattr(last_result, "exit_status"):
            message = f"{message}\n{_describe_result(last_result)}"
        super().__init__(message)


def _describe_result(result: Any) -> str:
    args = getattr(result, "args", None)
    command = " ".join(args) if isinstance(args, (list, tuple)) else str(args)
    return (
        f"command: {command}\n"
        f"exit status: {getattr(result, 'exit_status', None)}\n"
        f"stdout: {getattr(result, 'stdout', '')}\n"
        f"stderr: {getattr(result, 'stderr', '')}"
    )
