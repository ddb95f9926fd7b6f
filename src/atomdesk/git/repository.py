"""
Git repository interface.

This module wraps GitPython for the local side of the sync engine: working
tree and index status, per-file diffs and line counts, staging, commits,
history, remotes and upstream tracking. A GitRepository is opened for one
operation and closed when that operation ends.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.objects import Commit as GitCommit

from atomdesk.git.exceptions import (
    BranchError,
    CommitError,
    GitError,
    RemoteError,
    RepositoryNotFoundError,
)
from atomdesk.git.models import (
    Author,
    CommitHistoryItem,
    CommitSummary,
    FileStatus,
    FileStatusEntry,
    RemoteInfo,
    RepositoryStatus,
)
from atomdesk.settings.config import DEFAULT_REMOTE_PRIORITY

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "A": FileStatus.ADDED,
    "D": FileStatus.DELETED,
    "M": FileStatus.MODIFIED,
    "R": FileStatus.RENAMED,
}


def count_line_changes(patch: Union[str, bytes, None]) -> tuple[int, int]:
    """
    Count added and deleted lines of a patch by their leading marker.

    File headers (``+++``/``---``) are not counted.

    Returns:
        (additions, deletions)
    """
    if not patch:
        return 0, 0
    if isinstance(patch, bytes):
        patch = patch.decode("utf-8", errors="replace")

    additions = deletions = 0
    for line in patch.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            additions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return additions, deletions


def commit_summary(commit: GitCommit) -> CommitSummary:
    """Convert a GitPython commit to a CommitSummary."""
    return CommitSummary(
        sha=commit.hexsha,
        short_sha=commit.hexsha[:7],
        message=commit.message.strip(),
        author=commit.author.name or "",
        email=commit.author.email or "",
        timestamp=datetime.fromtimestamp(commit.authored_date, tz=timezone.utc),
    )


class GitRepository:
    """
    Per-operation handle on an on-disk repository.

    Example:
        ```python
        with GitRepository("/path/to/repo") as repo:
            status = repo.status()
            print(f"On branch: {status.branch} (+{status.ahead}/-{status.behind})")
            for entry in status.files:
                print(entry)
        ```
    """

    def __init__(self, path: Union[str, Path]):
        """
        Open a Git repository.

        Args:
            path: Path to the repository root

        Raises:
            RepositoryNotFoundError: If the path is not a valid Git repository
        """
        self.path = Path(path).expanduser().resolve()

        try:
            self._repo = Repo(self.path)
        except InvalidGitRepositoryError:
            raise RepositoryNotFoundError(
                f"Not a valid Git repository: {self.path}",
                repo_path=str(self.path),
            )
        except NoSuchPathError:
            raise RepositoryNotFoundError(
                f"Path does not exist: {self.path}",
                repo_path=str(self.path),
            )

    @classmethod
    def init(
        cls,
        path: Union[str, Path],
        *,
        bare: bool = False,
        initial_branch: Optional[str] = None,
    ) -> "GitRepository":
        """
        Initialize a new Git repository.

        Args:
            path: Path for the new repository
            bare: Create a bare repository
            initial_branch: Name for the initial branch (default: git default)
        """
        path = Path(path).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)

        kwargs = {"bare": bare}
        if initial_branch:
            kwargs["initial_branch"] = initial_branch
        try:
            Repo.init(path, **kwargs).close()
        except GitCommandError as e:
            raise GitError(
                f"Failed to initialize repository: {e.stderr}",
                command="git init",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(path),
            )
        return cls(path)

    @property
    def repo(self) -> Repo:
        """The underlying GitPython repository."""
        return self._repo

    def close(self) -> None:
        self._repo.close()

    def __enter__(self) -> "GitRepository":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # Status and Info
    # =========================================================================

    def status(self) -> RepositoryStatus:
        """
        Compute working-tree and index status.

        A path changed both in the index and in the working tree yields two
        entries, one staged and one unstaged. Untracked files are reported as
        unstaged additions; ignored files are skipped.
        """
        files: list[FileStatusEntry] = []

        try:
            # Staged changes (HEAD vs index)
            if self._repo.head.is_valid():
                for diff in self._repo.head.commit.diff(create_patch=True):
                    files.append(self._diff_to_entry(diff, staged=True))
            else:
                for path, _stage in self._repo.index.entries:
                    additions = self._count_file_lines(path)
                    files.append(
                        FileStatusEntry(path=path, status=FileStatus.ADDED, staged=True, additions=additions)
                    )

            # Unstaged changes (index vs working tree)
            for diff in self._repo.index.diff(None, create_patch=True):
                files.append(self._diff_to_entry(diff, staged=False))

            untracked = list(self._repo.untracked_files)
        except GitCommandError as e:
            raise GitError(
                f"Failed to read status: {e.stderr}",
                command="git status",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(self.path),
            )

        for path in untracked:
            files.append(
                FileStatusEntry(
                    path=path,
                    status=FileStatus.ADDED,
                    staged=False,
                    additions=self._count_file_lines(path),
                )
            )

        branch = self.current_branch
        upstream = None
        ahead = behind = 0
        if branch and self._repo.head.is_valid():
            tracking = self._repo.active_branch.tracking_branch()
            if tracking is not None:
                upstream = tracking.name
                ahead, behind = self.ahead_behind(branch)

        return RepositoryStatus(
            branch=branch,
            commit=self.current_commit,
            is_detached=self._repo.head.is_detached,
            upstream=upstream,
            files=files,
            untracked=untracked,
            ahead=ahead,
            behind=behind,
        )

    def _diff_to_entry(self, diff, staged: bool) -> FileStatusEntry:
        """Convert a GitPython diff to a FileStatusEntry."""
        status = _STATUS_MAP.get(diff.change_type, FileStatus.MODIFIED)
        if diff.new_file:
            status = FileStatus.ADDED
        elif diff.deleted_file:
            status = FileStatus.DELETED
        elif diff.renamed_file:
            status = FileStatus.RENAMED

        path = diff.b_path or diff.a_path
        old_path = diff.a_path if status == FileStatus.RENAMED else None
        additions, deletions = count_line_changes(diff.diff)

        return FileStatusEntry(
            path=path,
            status=status,
            staged=staged,
            additions=additions,
            deletions=deletions,
            old_path=old_path,
        )

    def _count_file_lines(self, path: str) -> int:
        try:
            with open(self.path / path, "rb") as f:
                data = f.read()
        except OSError:
            return 0
        if b"\0" in data:
            return 0
        return len(data.splitlines())

    @property
    def current_branch(self) -> Optional[str]:
        """Get the current branch name, or None if HEAD is detached."""
        if self._repo.head.is_detached:
            return None
        return self._repo.active_branch.name

    @property
    def current_commit(self) -> Optional[str]:
        """Get the current commit SHA."""
        if self._repo.head.is_valid():
            return self._repo.head.commit.hexsha
        return None

    def has_uncommitted_changes(self) -> bool:
        """Whether tracked content differs from HEAD in the index or working tree."""
        return self._repo.is_dirty(index=True, working_tree=True, untracked_files=False)

    # =========================================================================
    # Diff
    # =========================================================================

    def diff(self, file_path: str, *, staged: bool = False) -> str:
        """
        Patch text for one file.

        Args:
            file_path: Path relative to the repository root
            staged: Compare index to HEAD; otherwise working tree to index

        Returns:
            Unified diff text, empty if the file is unchanged
        """
        try:
            if staged:
                return self._repo.git.diff("--cached", "--", file_path)
            if file_path in self._repo.untracked_files:
                # Untracked content diffs against nothing.
                _status, out, _err = self._repo.git.diff(
                    "--no-index",
                    "--",
                    "/dev/null",
                    file_path,
                    with_extended_output=True,
                    with_exceptions=False,
                )
                return out
            return self._repo.git.diff("--", file_path)
        except GitCommandError as e:
            raise GitError(
                f"Failed to diff '{file_path}': {e.stderr}",
                command=f"git diff {file_path}",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(self.path),
            )

    def file_stats(self, file_path: str, *, staged: bool = False) -> tuple[int, int]:
        """Added and deleted line counts for one file."""
        return count_line_changes(self.diff(file_path, staged=staged))

    # =========================================================================
    # Staging
    # =========================================================================

    def stage(self, paths: Union[str, list[str]]) -> None:
        """
        Stage files for commit.

        Files that no longer exist on disk are removed from the index.

        Raises:
            CommitError: If staging fails
        """
        if isinstance(paths, str):
            paths = [paths]

        present = [p for p in paths if (self.path / p).exists()]
        missing = [p for p in paths if not (self.path / p).exists()]
        try:
            if present:
                self._repo.index.add(present)
            if missing:
                self._repo.index.remove(missing, working_tree=False)
        except (GitCommandError, OSError) as e:
            raise CommitError(
                f"Failed to stage files: {getattr(e, 'stderr', e)}",
                command=f"git add {' '.join(paths)}",
                repo_path=str(self.path),
            )

    def unstage(self, paths: Union[str, list[str]]) -> None:
        """
        Unstage files.

        Index entries are restored from HEAD; entries that HEAD does not
        contain are dropped from the index.

        Raises:
            CommitError: If unstaging fails
        """
        if isinstance(paths, str):
            paths = [paths]

        try:
            if self._repo.head.is_valid():
                self._repo.index.reset(paths=paths)
            else:
                self._repo.index.remove(paths, working_tree=False)
        except GitCommandError as e:
            raise CommitError(
                f"Failed to unstage files: {e.stderr}",
                command="git reset",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(self.path),
            )

    # =========================================================================
    # Commits
    # =========================================================================

    def commit(
        self,
        message: str,
        *,
        description: Optional[str] = None,
        author: Optional[Author] = None,
        amend: bool = False,
        signoff: bool = False,
    ) -> str:
        """
        Commit the index.

        Args:
            message: Summary line
            description: Optional body, separated from the summary by a blank line
            author: Author and committer (uses git config if not provided)
            amend: Replace HEAD, keeping its parents
            signoff: Append a Signed-off-by trailer

        Returns:
            SHA of the new commit

        Raises:
            CommitError: If the message is empty or the commit fails
        """
        if not message or not message.strip():
            raise CommitError("Commit message must not be empty", repo_path=str(self.path))

        full_message = message.strip()
        if description and description.strip():
            full_message += "\n\n" + description.strip()

        actor = Actor(author.name, author.email) if author else None
        if signoff:
            signer = actor or Actor.committer(self._repo.config_reader())
            full_message += f"\n\nSigned-off-by: {signer.name} <{signer.email}>"

        kwargs = {}
        if actor:
            kwargs["author"] = actor
            kwargs["committer"] = actor

        try:
            if amend:
                if not self._repo.head.is_valid():
                    raise CommitError("Nothing to amend: no commits yet", repo_path=str(self.path))
                kwargs["parent_commits"] = list(self._repo.head.commit.parents)
            commit = self._repo.index.commit(full_message, **kwargs)
        except (GitCommandError, ValueError) as e:
            raise CommitError(
                f"Failed to create commit: {getattr(e, 'stderr', e)}",
                command="git commit",
                repo_path=str(self.path),
            )

        logger.info("Created commit %s in %s", commit.hexsha[:7], self.path)
        return commit.hexsha

    def history(self, limit: int = 50, skip: int = 0) -> list[CommitHistoryItem]:
        """
        Commits reachable from HEAD, newest first.

        Args:
            limit: Maximum number of commits
            skip: Number of commits to skip from the top
        """
        if not self._repo.head.is_valid():
            return []

        items = []
        for commit in self._repo.iter_commits("HEAD", max_count=limit, skip=skip):
            summary = commit_summary(commit)
            items.append(
                CommitHistoryItem(
                    **summary.model_dump(),
                    parents=[p.hexsha for p in commit.parents],
                )
            )
        return items

    # =========================================================================
    # Remotes and Tracking
    # =========================================================================

    def remotes(self) -> list[RemoteInfo]:
        """List configured remotes."""
        result = []
        for remote in self._repo.remotes:
            urls = list(remote.urls)
            result.append(RemoteInfo(name=remote.name, url=urls[0] if urls else ""))
        return result

    def remote_url(self, name: str) -> str:
        """
        URL of a remote.

        Raises:
            RemoteError: If the remote is not configured
        """
        try:
            return next(iter(self._repo.remote(name).urls))
        except (ValueError, StopIteration, GitCommandError):
            raise RemoteError(f"Remote '{name}' is not configured", repo_path=str(self.path))

    def default_remote(self, preferred: Optional[list[str]] = None) -> str:
        """
        Pick the remote to sync with.

        The current branch's upstream remote wins, then the first name from
        ``preferred`` that is configured, then the first configured remote.

        Raises:
            RemoteError: If no remotes are configured
        """
        names = [r.name for r in self._repo.remotes]
        if not names:
            raise RemoteError("No remotes configured", repo_path=str(self.path))

        if not self._repo.head.is_detached:
            tracking = self._repo.active_branch.tracking_branch()
            if tracking is not None and tracking.remote_name in names:
                return tracking.remote_name

        for name in preferred or DEFAULT_REMOTE_PRIORITY:
            if name in names:
                return name
        return names[0]

    def ahead_behind(self, branch: Optional[str] = None) -> tuple[int, int]:
        """
        Commits ahead of and behind the upstream of ``branch``.

        Args:
            branch: Local branch name (default: current branch)

        Returns:
            (ahead, behind); (0, 0) without an upstream
        """
        if branch is None:
            branch = self.current_branch
            if branch is None:
                return 0, 0
        if branch not in self._repo.heads:
            raise BranchError(f"Branch '{branch}' not found", repo_path=str(self.path))

        head = self._repo.heads[branch]
        tracking = head.tracking_branch()
        if tracking is None or not tracking.is_valid():
            return 0, 0

        ahead = len(list(self._repo.iter_commits(f"{tracking.path}..{head.path}")))
        behind = len(list(self._repo.iter_commits(f"{head.path}..{tracking.path}")))
        return ahead, behind

    # =========================================================================
    # Utility
    # =========================================================================

    def __repr__(self) -> str:
        branch = self.current_branch or "detached"
        return f"GitRepository(path={self.path!r}, branch={branch!r})"

    def __str__(self) -> str:
        return str(self.path)
