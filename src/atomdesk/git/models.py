"""
Git data models.

This module defines Pydantic models for the records exchanged between the
sync engine and its callers. Stages, statuses and strategies are closed
enums; their string values are only used at the display/wire boundary.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from atomdesk.git.auth import AuthCredential


class FileStatus(str, Enum):
    """Change classification of a file."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class PullStrategy(str, Enum):
    """How pull integrates upstream commits."""

    MERGE = "merge"
    REBASE = "rebase"


class ProgressStage(str, Enum):
    """Stage of a long-running network operation."""

    INITIALIZING = "Initializing"
    CONNECTING = "Connecting"
    DOWNLOADING = "Downloading"
    UNPACKING = "Unpacking"
    CHECKING_OUT = "CheckingOut"
    COMPLETED = "Completed"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStage.COMPLETED, ProgressStage.ERROR)


class Author(BaseModel):
    """Git author/committer information."""

    name: str = Field(description="Author name")
    email: str = Field(description="Author email")


class FileStatusEntry(BaseModel):
    """One changed path, either on the index side or the working-tree side."""

    path: str = Field(description="File path relative to repo root")
    status: FileStatus = Field(description="Change classification")
    staged: bool = Field(default=False, description="Whether the change is staged")
    additions: int = Field(default=0, ge=0, description="Added lines")
    deletions: int = Field(default=0, ge=0, description="Deleted lines")
    old_path: Optional[str] = Field(default=None, description="Original path for renames")

    def __str__(self) -> str:
        prefix = "staged" if self.staged else "unstaged"
        if self.old_path:
            return f"{prefix} {self.status.value}: {self.old_path} -> {self.path}"
        return f"{prefix} {self.status.value}: {self.path}"


class RepositoryStatus(BaseModel):
    """Status of a Git repository."""

    branch: Optional[str] = Field(default=None, description="Current branch name")
    commit: Optional[str] = Field(default=None, description="Current commit SHA")
    is_detached: bool = Field(default=False, description="Whether HEAD is detached")
    upstream: Optional[str] = Field(default=None, description="Upstream of the current branch")
    files: list[FileStatusEntry] = Field(default_factory=list, description="Changed paths")
    untracked: list[str] = Field(default_factory=list, description="Untracked paths, also listed in files")
    ahead: int = Field(default=0, ge=0, description="Commits ahead of upstream")
    behind: int = Field(default=0, ge=0, description="Commits behind upstream")

    @property
    def staged(self) -> list[FileStatusEntry]:
        return [f for f in self.files if f.staged]

    @property
    def unstaged(self) -> list[FileStatusEntry]:
        return [f for f in self.files if not f.staged]

    @property
    def is_clean(self) -> bool:
        return not self.files

    @property
    def changed_paths(self) -> list[str]:
        """Distinct changed paths in first-seen order."""
        return list(dict.fromkeys(f.path for f in self.files))


class CommitSummary(BaseModel):
    """Short description of a commit."""

    sha: str = Field(description="Full commit SHA")
    short_sha: str = Field(description="Short commit SHA (7 chars)")
    message: str = Field(description="Commit message")
    author: str = Field(description="Author name")
    email: str = Field(description="Author email")
    timestamp: datetime = Field(description="Author date")

    @property
    def subject(self) -> str:
        return self.message.split("\n", 1)[0]


class CommitHistoryItem(CommitSummary):
    """A commit in the history listing."""

    parents: list[str] = Field(default_factory=list, description="Parent commit SHAs")

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1


class BranchInfo(BaseModel):
    """A local or remote-tracking branch."""

    name: str = Field(description="Branch name (remote branches include the remote prefix)")
    is_current: bool = Field(default=False, description="Whether HEAD points at this branch")
    is_remote: bool = Field(default=False, description="Whether this is a remote-tracking branch")
    upstream: Optional[str] = Field(default=None, description="Upstream, e.g. origin/main")
    ahead: int = Field(default=0, ge=0, description="Commits ahead of upstream")
    behind: int = Field(default=0, ge=0, description="Commits behind upstream")
    last_commit: Optional[CommitSummary] = Field(default=None, description="Tip commit")


class SwitchResult(BaseModel):
    """Outcome of a branch switch; a blocked switch is not an error."""

    success: bool
    message: str = ""
    has_uncommitted_changes: bool = False
    uncommitted_files: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """
    Outcome of fetch, pull or push.

    A conflict is a successful call describing an unresolved state, so it is
    reported here rather than raised.
    """

    success: bool
    message: str = ""
    has_conflicts: bool = False
    conflicted_files: list[str] = Field(default_factory=list)
    ahead: int = Field(default=0, ge=0)
    behind: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> "SyncResult":
        if self.has_conflicts and (self.success or self.ahead or self.behind):
            raise ValueError("a conflicted result must have success=False and ahead=behind=0")
        if self.success and self.conflicted_files:
            raise ValueError("a successful result cannot list conflicted files")
        return self

    @classmethod
    def ok(cls, message: str, ahead: int = 0, behind: int = 0) -> "SyncResult":
        return cls(success=True, message=message, ahead=ahead, behind=behind)

    @classmethod
    def conflict(cls, message: str, files: list[str]) -> "SyncResult":
        return cls(success=False, message=message, has_conflicts=True, conflicted_files=files)

    @classmethod
    def failed(cls, message: str) -> "SyncResult":
        return cls(success=False, message=message)


class NetworkCounters(BaseModel):
    """Transfer counters reported by the network layer."""

    received_objects: int = 0
    indexed_objects: int = 0
    total_objects: int = 0
    received_bytes: int = 0


class ProgressEvent(BaseModel):
    """A progress record emitted to the event sink."""

    operation_id: str
    stage: ProgressStage
    percent: int = Field(ge=0, le=100)
    message: str = ""
    network: Optional[NetworkCounters] = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize with string stage names for the front end."""
        data: dict[str, Any] = {
            "id": self.operation_id,
            "stage": self.stage.value,
            "percent": self.percent,
            "message": self.message,
        }
        if self.network is not None:
            data["network"] = self.network.model_dump()
        return data


class CloneRequest(BaseModel):
    """Parameters of a clone."""

    url: str = Field(description="Repository URL")
    destination: Path = Field(description="Target directory")
    branch: Optional[str] = Field(default=None, description="Branch to check out")
    depth: Optional[int] = Field(default=None, gt=0, description="Shallow clone depth")
    recursive: bool = Field(default=False, description="Initialize submodules")
    credential: Optional[AuthCredential] = Field(
        default=None, description="Explicit credential; resolved from the URL when omitted"
    )


class CloneStats(BaseModel):
    """Statistics collected after a clone."""

    duration_ms: int = 0
    received_bytes: int = 0
    object_count: int = 0
    file_count: int = 0


class CloneResult(BaseModel):
    """Successful clone outcome."""

    path: Path
    branch: Optional[str] = None
    commit: Optional[str] = None
    stats: CloneStats = Field(default_factory=CloneStats)
    used_external: bool = Field(default=False, description="Whether the external tool performed the clone")


class RemoteInfo(BaseModel):
    """A configured remote."""

    name: str
    url: str
