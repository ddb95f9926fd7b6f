"""
Embedded network transport.

Clone, fetch and push run in-process through dulwich. Each operation walks
the credential attempts from the resolver: a rejected credential moves on
to the next attempt, every other failure is wrapped in LibraryError.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

from dulwich import porcelain
from dulwich.client import HTTPUnauthorized
from dulwich.errors import GitProtocolError, NotGitRepository

from atomdesk.git.auth import (
    AuthCredential,
    PasswordCredential,
    SshKeyCredential,
    TokenCredential,
    UrlScheme,
    build_ssh_command,
    classify_url,
    mask_credentials,
)
from atomdesk.git.credentials import AttemptBudget, CredentialResolver
from atomdesk.git.exceptions import (
    AuthenticationFailedError,
    ExternalToolFailedError,
    GitError,
    LibraryError,
)
from atomdesk.git.executor import FailureClass, classify_failure, is_push_rejection_text
from atomdesk.settings.config import HostKeyPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures of the embedded engine that are wrapped rather than propagated raw.
_ENGINE_ERRORS = (GitProtocolError, NotGitRepository, porcelain.Error, OSError, KeyError, ValueError)


class _NullStream:
    """Byte sink used when nobody listens to progress."""

    def write(self, data: Union[bytes, str]) -> int:
        return len(data)

    def flush(self) -> None:
        pass


def is_push_rejected(error: GitError) -> bool:
    """Whether a push failed because the remote branch has diverged, on either path."""
    if isinstance(error, LibraryError):
        return isinstance(error.cause, porcelain.DivergedBranches)
    if isinstance(error, ExternalToolFailedError):
        return is_push_rejection_text(error.stderr or "")
    return False


class EmbeddedTransport:
    """
    Network operations through dulwich.

    Example:
        ```python
        transport = EmbeddedTransport(resolver)
        attempts = resolver.resolve(url)
        transport.fetch("/path/to/repo", "origin", url, attempts)
        ```
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        *,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW,
        connect_timeout: int = 10,
    ):
        self.resolver = resolver
        self.host_key_policy = host_key_policy
        self.connect_timeout = connect_timeout

    def ssh_command(self, credential: Optional[AuthCredential] = None) -> str:
        key_path = credential.path if isinstance(credential, SshKeyCredential) else None
        return build_ssh_command(
            key_path,
            policy=self.host_key_policy,
            connect_timeout=self.connect_timeout,
        )

    def fallback_ssh_command(self, attempts: list[AuthCredential]) -> str:
        """SSH command for the external tool: the first key attempt, if any."""
        for credential in attempts:
            if isinstance(credential, SshKeyCredential):
                return self.ssh_command(credential)
        return self.ssh_command()

    def transport_kwargs(self, url: str, credential: AuthCredential) -> dict[str, Any]:
        """Translate one credential into dulwich client keyword arguments."""
        scheme = classify_url(url)
        if scheme == UrlScheme.HTTPS:
            if isinstance(credential, PasswordCredential):
                return {"username": credential.username, "password": credential.password.get_secret_value()}
            if isinstance(credential, TokenCredential):
                username, password = credential.basic_auth()
                return {"username": username, "password": password}
            return {}
        if scheme == UrlScheme.SSH:
            return {"ssh_command": self.ssh_command(credential)}
        return {}

    def _with_credentials(
        self,
        description: str,
        url: str,
        attempts: list[AuthCredential],
        action: Callable[[dict[str, Any]], T],
        *,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> T:
        if classify_url(url) == UrlScheme.SSH and self.host_key_policy != HostKeyPolicy.STRICT:
            logger.info("SSH host keys for %s are checked with policy '%s'", url, self.host_key_policy.value)

        budget = AttemptBudget(self.resolver.max_attempts)
        for credential in attempts:
            number = budget.consume(url)
            logger.debug(
                "%s %s: attempt %d/%d using %s",
                description,
                mask_credentials(url),
                number,
                budget.limit,
                credential.describe(),
            )
            try:
                result = action(self.transport_kwargs(url, credential))
            except HTTPUnauthorized:
                self._cleanup(on_failure)
                logger.debug("%s %s: credential rejected", description, mask_credentials(url))
                continue
            except _ENGINE_ERRORS as e:
                self._cleanup(on_failure)
                if classify_failure(e, url) == FailureClass.AUTHENTICATION:
                    logger.debug("%s %s: credential rejected: %s", description, mask_credentials(url), e)
                    continue
                raise LibraryError(
                    f"{description.capitalize()} of {mask_credentials(url)} failed: {e}",
                    command=description,
                    cause=e,
                )
            except BaseException:
                self._cleanup(on_failure)
                raise

            self.resolver.record_success(url, credential)
            return result

        raise AuthenticationFailedError(
            f"Authentication failed for {mask_credentials(url)} after {budget.used} attempt(s)",
            command=description,
        )

    @staticmethod
    def _cleanup(on_failure: Optional[Callable[[], None]]) -> None:
        if on_failure is not None:
            on_failure()

    # =========================================================================
    # Operations
    # =========================================================================

    def clone(
        self,
        url: str,
        destination: Path,
        attempts: list[AuthCredential],
        *,
        branch: Optional[str] = None,
        depth: Optional[int] = None,
        errstream: Any = None,
    ) -> None:
        """
        Clone ``url`` into ``destination``.

        After a failed attempt the destination is restored to its previous
        state: removed if it did not exist, emptied if it did.
        """
        existed = destination.exists()

        def restore() -> None:
            reset_destination(destination, existed)

        def action(kwargs: dict[str, Any]) -> None:
            repo = porcelain.clone(
                url,
                str(destination),
                errstream=errstream or _NullStream(),
                depth=depth,
                branch=branch.encode("utf-8") if branch else None,
                **kwargs,
            )
            repo.close()

        self._with_credentials("clone", url, attempts, action, on_failure=restore)

    def fetch(
        self,
        repo_path: Union[str, Path],
        remote: str,
        url: str,
        attempts: list[AuthCredential],
        *,
        errstream: Any = None,
    ) -> None:
        """Fetch all configured refspecs of ``remote`` into its tracking refs."""

        def action(kwargs: dict[str, Any]) -> None:
            porcelain.fetch(
                str(repo_path),
                remote_location=remote,
                errstream=errstream or _NullStream(),
                **kwargs,
            )

        self._with_credentials("fetch", url, attempts, action)

    def push(
        self,
        repo_path: Union[str, Path],
        remote: str,
        url: str,
        refspec: str,
        attempts: list[AuthCredential],
        *,
        errstream: Any = None,
    ) -> None:
        """Push one refspec; a leading ``+`` permits non-fast-forward updates."""

        def action(kwargs: dict[str, Any]) -> None:
            porcelain.push(
                str(repo_path),
                remote_location=remote,
                refspecs=[refspec.encode("utf-8")],
                errstream=errstream or _NullStream(),
                **kwargs,
            )

        self._with_credentials("push", url, attempts, action)


def reset_destination(destination: Path, existed: bool) -> None:
    """Return a clone destination to its pre-clone state."""
    if not destination.exists():
        if existed:
            destination.mkdir(parents=True)
        return
    if not existed:
        shutil.rmtree(destination, ignore_errors=True)
        return
    for child in destination.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink()
