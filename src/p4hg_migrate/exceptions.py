"""Exceptions raised by the Perforce and Mercurial clients."""

from typing import Optional, Sequence


class MigrationError(Exception):
    """Base exception for all migration errors."""

    pass


class ProcessError(MigrationError):
    """Base exception for failures while running an external command."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None):
        """Initialize process error.

        Args:
            message: Error message
            command: Argument vector of the failed command
        """
        super().__init__(message)
        self.command = list(command) if command else []


class IoError(ProcessError):
    """Waiting for the child process failed."""

    pass


class ProcessTimeoutError(IoError):
    """The child process did not finish within the configured timeout."""

    pass


class ExecutionError(ProcessError):
    """The child process could not be spawned."""

    pass


class CommunicationError(ProcessError):
    """Reading from or writing to the child process failed."""

    pass


class ExitError(ProcessError):
    """The child process finished with a non-zero exit code."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        command: Optional[Sequence[str]] = None,
    ):
        """Initialize exit error.

        Args:
            message: Error message
            exit_code: Exit code reported by the process
            command: Argument vector of the failed command
        """
        super().__init__(message, command=command)
        self.exit_code = exit_code


class ChangeParseError(MigrationError):
    """A change number could not be parsed."""

    pass


class PerforceError(MigrationError):
    """Base exception for Perforce protocol errors."""

    pass


class LoginFailedError(PerforceError):
    """Perforce did not hand out a valid ticket."""

    pass


class NotLoggedInError(PerforceError):
    """An authenticated operation was called without an active session."""

    pass


class IncorrectChangeError(PerforceError):
    """A change description is missing required fields."""

    def __init__(self, commit: int):
        super().__init__(f'Incorrect change {commit}')
        self.commit = commit


class DateParseError(PerforceError):
    """The date of a change could not be parsed."""

    pass


class MercurialError(MigrationError):
    """Base exception for Mercurial protocol errors."""

    pass


class DateFormatError(MercurialError):
    """A commit date could not be formatted."""

    pass


class ReadMetadataError(MercurialError):
    """A file in the working copy could not be inspected."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
