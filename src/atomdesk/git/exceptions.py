"""
Git-specific exceptions.

Every error raised by the sync engine derives from GitError and carries a
machine-readable ErrorKind alongside the human-readable message.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-readable error category exposed at the command boundary."""

    AUTHENTICATION_FAILED = "AuthenticationFailed"
    INVALID_URL = "InvalidUrl"
    DIRECTORY_EXISTS = "DirectoryExists"
    MERGE_CONFLICT = "MergeConflict"
    EXTERNAL_TOOL_NOT_FOUND = "ExternalToolNotFound"
    EXTERNAL_TOOL_FAILED = "ExternalToolFailed"
    TIMEOUT = "Timeout"
    LIBRARY_ERROR = "LibraryError"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class GitError(Exception):
    """Base exception for all Git-related errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        repo_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.command = command
        self.return_code = return_code
        self.stderr = stderr
        self.repo_path = repo_path

    def __str__(self) -> str:
        parts = [self.message]
        if self.command:
            parts.append(f"command='{self.command}'")
        if self.return_code is not None:
            parts.append(f"return_code={self.return_code}")
        return " ".join(parts)

    def to_dict(self) -> dict[str, str]:
        """Serialize for the command layer as ``{type, message}``."""
        return {"type": self.kind.value, "message": self.message}


class AuthenticationFailedError(GitError):
    """Raised when every credential attempt was rejected."""

    kind = ErrorKind.AUTHENTICATION_FAILED


class InvalidUrlError(GitError):
    """Raised when a repository URL is empty or has an unknown scheme."""

    kind = ErrorKind.INVALID_URL


class DirectoryExistsError(GitError):
    """Raised when a clone destination exists and is not empty."""

    kind = ErrorKind.DIRECTORY_EXISTS


class MergeConflictError(GitError):
    """Raised by callers that want a merge conflict as an exception."""

    kind = ErrorKind.MERGE_CONFLICT

    def __init__(
        self,
        message: str,
        *,
        conflicting_files: Optional[list[str]] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.conflicting_files = conflicting_files or []


class ExternalToolNotFoundError(GitError):
    """Raised when the git executable cannot be located."""

    kind = ErrorKind.EXTERNAL_TOOL_NOT_FOUND


class ExternalToolFailedError(GitError):
    """Raised when the git executable exits with a non-zero status."""

    kind = ErrorKind.EXTERNAL_TOOL_FAILED


class GitTimeoutError(GitError):
    """Raised when the external git process exceeds its wall-clock limit."""

    kind = ErrorKind.TIMEOUT


class LibraryError(GitError):
    """Wraps a failure raised by the embedded engine."""

    kind = ErrorKind.LIBRARY_ERROR

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.cause = cause


class OperationCancelledError(GitError):
    """Raised at a stage boundary when the operation was cancelled."""

    kind = ErrorKind.CANCELLED


class RepositoryNotFoundError(GitError):
    """Raised when the repository does not exist or is not a valid Git repo."""

    pass


class BranchError(GitError):
    """Raised when branch operations fail."""

    pass


class RemoteError(GitError):
    """Raised when no usable remote is configured."""

    pass


class CommitError(GitError):
    """Raised when creating, staging or reading commits fails."""

    pass
