"""steprunner exceptions."""

from typing import List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class DocumentValidationError(Exception):
    """Raised when document validation fails.

    This exception is raised by the loader when validation errors occur,
    allowing the CLI to catch it and map to appropriate exit codes.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2  # Default validation exit code

        # Construct error message
        messages = []
        for error in errors:
            messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))


class StepRunnerError(Exception):
    """Base class for errors raised while executing a step."""


class DocumentShapeError(StepRunnerError):
    """A step has zero or more than one operation block."""


class TemplateRenderError(StepRunnerError):
    """A template has a syntax error or references an undefined variable."""

    def __init__(self, message: str, template: str = ""):
        self.template = template
        super().__init__(message)


class SpawnError(StepRunnerError):
    """The child process could not be started."""

    def __init__(self, program: str, cause: OSError):
        self.program = program
        super().__init__(f"Failed to spawn '{program}': {cause.strerror or cause}")


class ExitError(StepRunnerError):
    """The child process exited with a non-zero status."""

    def __init__(self, program: str, exit_code: int):
        self.program = program
        self.exit_code = exit_code
        super().__init__(f"'{program}' exited with status {exit_code}")


class StepTimeoutError(StepRunnerError):
    """The child process exceeded the step timeout and was killed."""

    def __init__(self, program: str, timeout_sec: float):
        self.program = program
        self.timeout_sec = timeout_sec
        self.exit_code = 124
        super().__init__(f"'{program}' timed out after {timeout_sec} seconds")


class ConfIOError(StepRunnerError):
    """Backup, directory creation, write, or chmod failed for a conf step."""


class AuthConfigError(StepRunnerError):
    """Key based ssh authentication requested without a usable key path."""


class HostKeyVerificationError(StepRunnerError):
    """The remote host key did not match the pinned fingerprint."""


class StepFailedError(StepRunnerError):
    """Wraps the cause of a failed step with the step's position and name."""

    def __init__(self, index: int, name: str, cause: Optional[BaseException] = None):
        self.index = index
        self.name = name
        self.cause = cause
        super().__init__(f"Step {index + 1} ({name}) failed: {cause}")

    def chain(self) -> List[str]:
        """Human-readable cause chain, outermost first."""
        messages = []
        current: Optional[BaseException] = self.cause
        while current is not None:
            messages.append(f"{type(current).__name__}: {current}")
            current = current.__cause__
        return messages
