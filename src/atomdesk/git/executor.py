"""
Dual-path execution.

Network operations run through the embedded engine first. When the embedded
engine fails with an SSH negotiation problem, the same logical operation is
re-run once with the external ``git`` executable, which receives an injected
``GIT_SSH_COMMAND`` and a hard wall-clock timeout.

Example:
    ```python
    executor = DualPathExecutor(ExternalGit(timeout=30))
    used_external = executor.run(
        "fetch",
        url,
        embedded=lambda: transport.fetch(path, "origin", url, attempts),
        external=lambda git: git.fetch(path, "origin"),
        ssh_command=build_ssh_command(),
    )
    ```
"""

import logging
import os
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from dulwich.client import HTTPUnauthorized
from dulwich.errors import HangupException

from atomdesk.git.auth import UrlScheme, classify_url, mask_credentials
from atomdesk.git.exceptions import (
    ErrorKind,
    ExternalToolFailedError,
    ExternalToolNotFoundError,
    GitError,
    GitTimeoutError,
    LibraryError,
)

logger = logging.getLogger(__name__)

DEFAULT_EXTERNAL_TIMEOUT = 30.0

# Error text that marks an SSH key-exchange or host-key negotiation failure.
SSH_NEGOTIATION_PATTERNS = (
    "hostkey preference",
    "hostkey",
    "host key",
    "method(s) are not currently supported",
    "no matching key exchange method",
    "unable to negotiate",
    "class=ssh",
    "kex_exchange_identification",
)

# Error text that marks a rejected credential.
AUTHENTICATION_PATTERNS = (
    "permission denied",
    "authentication failed",
    "invalid username or password",
    "could not read username",
    "401 unauthorized",
)

# Error text of a push the remote refused because it is not a fast-forward.
PUSH_REJECTED_PATTERNS = (
    "[rejected]",
    "non-fast-forward",
    "updates were rejected",
)


class FailureClass(str, Enum):
    """How an embedded-engine failure is handled."""

    SSH_NEGOTIATION = "ssh_negotiation"
    AUTHENTICATION = "authentication"
    OTHER = "other"


def _matches(text: str, patterns: Sequence[str]) -> bool:
    text = text.lower()
    return any(pattern in text for pattern in patterns)


def classify_failure(error: BaseException, url: Optional[str] = None) -> FailureClass:
    """
    Classify an embedded-engine failure.

    Structured signals (exception type, error kind, transport family) are
    checked first; error text is matched only when they are inconclusive.

    Args:
        error: The exception raised by the embedded engine, or a LibraryError
            wrapping it
        url: Repository URL the operation targeted

    Returns:
        The FailureClass deciding retry, fallback or propagation
    """
    if isinstance(error, LibraryError) and error.cause is not None:
        error = error.cause

    if isinstance(error, HTTPUnauthorized):
        return FailureClass.AUTHENTICATION
    if isinstance(error, GitError) and error.kind == ErrorKind.AUTHENTICATION_FAILED:
        return FailureClass.AUTHENTICATION

    text = str(error)
    if _matches(text, AUTHENTICATION_PATTERNS):
        return FailureClass.AUTHENTICATION

    # An SSH transport that hangs up without a recognizable reason failed
    # during negotiation.
    if isinstance(error, HangupException) and url is not None and classify_url(url) == UrlScheme.SSH:
        return FailureClass.SSH_NEGOTIATION

    if _matches(text, SSH_NEGOTIATION_PATTERNS):
        return FailureClass.SSH_NEGOTIATION
    return FailureClass.OTHER


def is_ssh_negotiation_error(error: BaseException, url: Optional[str] = None) -> bool:
    return classify_failure(error, url) == FailureClass.SSH_NEGOTIATION


def is_push_rejection_text(text: str) -> bool:
    return _matches(text, PUSH_REJECTED_PATTERNS)


class ExternalGit:
    """
    Runs the external ``git`` executable.

    Every invocation is non-interactive, has ``GIT_SSH_COMMAND`` injected
    when an SSH command is configured, and is killed after ``timeout``
    seconds.
    """

    def __init__(
        self,
        executable: str = "git",
        *,
        timeout: float = DEFAULT_EXTERNAL_TIMEOUT,
        ssh_command: Optional[str] = None,
    ):
        self.executable = executable
        self.timeout = timeout
        self.ssh_command = ssh_command

    def with_ssh_command(self, ssh_command: Optional[str]) -> "ExternalGit":
        return ExternalGit(self.executable, timeout=self.timeout, ssh_command=ssh_command)

    def resolve_executable(self) -> str:
        """
        Locate the executable.

        Raises:
            ExternalToolNotFoundError: If it is not on PATH
        """
        located = shutil.which(self.executable)
        if located is None:
            raise ExternalToolNotFoundError(
                f"External git executable '{self.executable}' not found",
                command=self.executable,
            )
        return located

    def environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.ssh_command:
            env["GIT_SSH_COMMAND"] = self.ssh_command
        return env

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Union[str, Path]] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Run one git command.

        Args:
            args: Arguments after the executable
            cwd: Working directory
            check: Raise ExternalToolFailedError on a non-zero exit

        Raises:
            ExternalToolNotFoundError: If git is not installed
            GitTimeoutError: If the process outlives the timeout
            ExternalToolFailedError: If ``check`` and git exits non-zero
        """
        executable = self.resolve_executable()
        display = " ".join(["git", *(mask_credentials(a) for a in args)])
        logger.debug("Running %s (timeout %ss)", display, self.timeout)

        try:
            proc = subprocess.run(
                [executable, *args],
                cwd=str(cwd) if cwd else None,
                env=self.environment(),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ExternalToolNotFoundError(
                f"External git executable '{self.executable}' not found",
                command=display,
            )
        except subprocess.TimeoutExpired:
            raise GitTimeoutError(
                f"{display} timed out after {self.timeout:g} seconds",
                command=display,
                repo_path=str(cwd) if cwd else None,
            )

        if check and proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise ExternalToolFailedError(
                f"{display} failed: {stderr or 'no error output'}",
                command=display,
                return_code=proc.returncode,
                stderr=stderr,
                repo_path=str(cwd) if cwd else None,
            )
        return proc

    # =========================================================================
    # Network operations
    # =========================================================================

    def clone(
        self,
        url: str,
        destination: Union[str, Path],
        *,
        branch: Optional[str] = None,
        depth: Optional[int] = None,
        recursive: bool = False,
        progress: Any = None,
    ) -> None:
        """
        Clone with the external tool.

        ``progress`` is a writable stream (e.g. a SidebandProgressParser) that
        receives the captured ``--progress`` output once git exits.
        """
        args = ["clone", "--progress"]
        if branch:
            args += ["--branch", branch]
        if depth:
            args += ["--depth", str(depth)]
        if recursive:
            args.append("--recursive")
        args += [url, str(destination)]
        proc = self.run(args)
        if progress is not None and proc.stderr:
            progress.write(proc.stderr)

    def fetch(self, repo_path: Union[str, Path], remote: str) -> None:
        self.run(["fetch", remote], cwd=repo_path)

    def push(self, repo_path: Union[str, Path], remote: str, refspec: str) -> None:
        self.run(["push", remote, refspec], cwd=repo_path)


class DualPathExecutor:
    """Runs an operation embedded first, externally on SSH negotiation failure."""

    def __init__(self, external: Optional[ExternalGit] = None):
        self.external = external or ExternalGit()

    def run(
        self,
        description: str,
        url: str,
        *,
        embedded: Callable[[], Any],
        external: Callable[[ExternalGit], Any],
        ssh_command: Optional[str] = None,
        before_fallback: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Execute one logical operation.

        Args:
            description: Operation name for logs
            url: Repository URL the operation targets
            embedded: Runs the operation with the embedded engine
            external: Runs the operation with the given ExternalGit
            ssh_command: SSH command injected for the external run
            before_fallback: Called before the external run, e.g. to clean up

        Returns:
            True if the external tool performed the operation

        Raises:
            LibraryError: If the embedded engine failed for another reason
            GitError: If the external run failed
        """
        try:
            embedded()
            return False
        except LibraryError as e:
            if not is_ssh_negotiation_error(e, url):
                raise
            logger.info(
                "Embedded %s of %s failed during SSH negotiation (%s); retrying with external git",
                description,
                mask_credentials(url),
                e.message,
            )

        if before_fallback is not None:
            before_fallback()
        external(self.external.with_ssh_command(ssh_command))
        return True
