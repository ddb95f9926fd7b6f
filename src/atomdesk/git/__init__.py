"""
Repository synchronization engine.

This package clones, inspects, commits, merges, rebases, pushes and pulls
repositories on behalf of a graphical front end. Network operations run
in-process through dulwich and fall back to the external ``git`` tool when
SSH negotiation fails; local operations use GitPython.

Example:
    ```python
    from atomdesk.git import CloneRequest, GitService, PullStrategy

    service = GitService(sink=lambda event: print(event.stage, event.percent))

    # Clone with live progress
    result = await service.clone(
        CloneRequest(url="https://github.com/user/repo.git", destination="/tmp/repo")
    )

    # Inspect and commit
    status = await service.status(result.path)
    await service.stage(result.path, status.changed_paths)
    await service.commit(result.path, "Update files")

    # Sync
    pulled = await service.pull(result.path, strategy=PullStrategy.REBASE)
    if pulled.has_conflicts:
        print("Conflicts:", pulled.conflicted_files)
    await service.push(result.path)
    ```
"""

from atomdesk.git.auth import (
    AuthCredential,
    AuthType,
    NoCredential,
    PasswordCredential,
    SshAgentCredential,
    SshKeyCredential,
    TokenCredential,
    UrlScheme,
    build_ssh_command,
    classify_url,
    detect_auth_type,
    extract_domain,
    extract_username,
    mask_credentials,
    strip_credentials,
)
from atomdesk.git.branches import BranchManager
from atomdesk.git.clone import CloneEngine
from atomdesk.git.credentials import AttemptBudget, CredentialResolver
from atomdesk.git.exceptions import (
    AuthenticationFailedError,
    BranchError,
    CommitError,
    DirectoryExistsError,
    ErrorKind,
    ExternalToolFailedError,
    ExternalToolNotFoundError,
    GitError,
    GitTimeoutError,
    InvalidUrlError,
    LibraryError,
    MergeConflictError,
    OperationCancelledError,
    RemoteError,
    RepositoryNotFoundError,
)
from atomdesk.git.executor import DualPathExecutor, ExternalGit
from atomdesk.git.models import (
    Author,
    BranchInfo,
    CloneRequest,
    CloneResult,
    CloneStats,
    CommitHistoryItem,
    CommitSummary,
    FileStatus,
    FileStatusEntry,
    ProgressEvent,
    ProgressStage,
    PullStrategy,
    RemoteInfo,
    RepositoryStatus,
    SwitchResult,
    SyncResult,
)
from atomdesk.git.progress import OperationContext
from atomdesk.git.repository import GitRepository
from atomdesk.git.service import GitService
from atomdesk.git.sync import RebaseSession, SyncEngine
from atomdesk.git.transport import EmbeddedTransport

__all__ = [
    # Entry points
    "GitService",
    "GitRepository",
    "CloneEngine",
    "SyncEngine",
    "RebaseSession",
    "BranchManager",
    "OperationContext",
    # Execution
    "CredentialResolver",
    "AttemptBudget",
    "EmbeddedTransport",
    "DualPathExecutor",
    "ExternalGit",
    # Authentication
    "AuthCredential",
    "AuthType",
    "NoCredential",
    "PasswordCredential",
    "TokenCredential",
    "SshKeyCredential",
    "SshAgentCredential",
    "UrlScheme",
    "build_ssh_command",
    "classify_url",
    "detect_auth_type",
    "extract_domain",
    "extract_username",
    "mask_credentials",
    "strip_credentials",
    # Models
    "Author",
    "BranchInfo",
    "CloneRequest",
    "CloneResult",
    "CloneStats",
    "CommitHistoryItem",
    "CommitSummary",
    "FileStatus",
    "FileStatusEntry",
    "ProgressEvent",
    "ProgressStage",
    "PullStrategy",
    "RemoteInfo",
    "RepositoryStatus",
    "SwitchResult",
    "SyncResult",
    # Exceptions
    "ErrorKind",
    "GitError",
    "AuthenticationFailedError",
    "InvalidUrlError",
    "DirectoryExistsError",
    "MergeConflictError",
    "ExternalToolNotFoundError",
    "ExternalToolFailedError",
    "GitTimeoutError",
    "LibraryError",
    "OperationCancelledError",
    "RepositoryNotFoundError",
    "BranchError",
    "RemoteError",
    "CommitError",
]
