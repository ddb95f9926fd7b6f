"""
AtomDesk - repository synchronization backend for a desktop Git client.

This package provides the engine behind the client's clone, status, commit,
branch and sync features, plus the settings layer that stores credentials.
"""

__version__ = "0.1.0"

from atomdesk.git import (
    BranchInfo,
    CloneRequest,
    CloneResult,
    GitError,
    GitRepository,
    GitService,
    PullStrategy,
    RepositoryStatus,
    SwitchResult,
    SyncResult,
)

from atomdesk.settings import (
    HostKeyPolicy,
    SyncSettings,
    TokenCache,
)

__all__ = [
    # Version
    "__version__",
    # Git
    "GitService",
    "GitRepository",
    "GitError",
    "CloneRequest",
    "CloneResult",
    "RepositoryStatus",
    "BranchInfo",
    "SwitchResult",
    "SyncResult",
    "PullStrategy",
    # Settings
    "SyncSettings",
    "HostKeyPolicy",
    "TokenCache",
]
