"""
Branch manager.

Branch listing with upstream and ahead/behind information, creation from a
loosely specified start point, guarded switching, deletion, and checkout of
remote-tracking branches.

Example:
    ```python
    manager = BranchManager()
    manager.create("/path/to/repo", "feature/x", "abc123")
    result = manager.switch("/path/to/repo", "feature/x")
    if not result.success:
        print("Blocked by:", result.uncommitted_files)
    ```
"""

import logging
import re
from pathlib import Path
from typing import Optional, Union

from git import GitCommandError, RemoteReference, Repo
from git.exc import BadName, BadObject
from git.objects import Commit as GitCommit

from atomdesk.git.exceptions import BranchError
from atomdesk.git.models import BranchInfo, SwitchResult
from atomdesk.git.repository import GitRepository, commit_summary
from atomdesk.settings.config import DEFAULT_REMOTE_PRIORITY

logger = logging.getLogger(__name__)

_FULL_SHA = re.compile(r"^[0-9a-fA-F]{40}$")
_RESOLVE_ERRORS = (BadName, BadObject, ValueError, GitCommandError)


def _remote_refs(repo: Repo) -> list[RemoteReference]:
    """Remote-tracking refs without the ``<remote>/HEAD`` pseudo-branches."""
    return [
        ref
        for ref in repo.references
        if isinstance(ref, RemoteReference) and not ref.name.endswith("/HEAD")
    ]


class BranchManager:
    """Branch lifecycle operations on a repository path."""

    def __init__(self, *, preferred_remotes: Optional[list[str]] = None):
        self.preferred_remotes = preferred_remotes or list(DEFAULT_REMOTE_PRIORITY)

    # =========================================================================
    # Listing
    # =========================================================================

    def list_branches(self, path: Union[str, Path]) -> list[BranchInfo]:
        """
        List local branches followed by remote-tracking branches.

        Local branches with an upstream carry ahead/behind counts.
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            current = wrapper.current_branch
            result = []

            for head in repo.heads:
                tracking = head.tracking_branch()
                upstream = tracking.name if tracking is not None else None
                ahead, behind = wrapper.ahead_behind(head.name)
                result.append(
                    BranchInfo(
                        name=head.name,
                        is_current=head.name == current,
                        is_remote=False,
                        upstream=upstream,
                        ahead=ahead,
                        behind=behind,
                        last_commit=self._summary(head.commit),
                    )
                )

            for ref in _remote_refs(repo):
                result.append(
                    BranchInfo(
                        name=ref.name,
                        is_remote=True,
                        last_commit=self._summary(ref.commit),
                    )
                )

        return result

    @staticmethod
    def _summary(commit: GitCommit):
        try:
            return commit_summary(commit)
        except ValueError:
            return None

    # =========================================================================
    # Create / Switch / Delete
    # =========================================================================

    def resolve_start_point(self, repo: Repo, start_point: Optional[str]) -> GitCommit:
        """
        Resolve the commit a new branch starts from.

        Tries, in order: an existing local branch, a full commit hash, any
        reference git can parse (short hash, tag, remote branch), and
        ``refs/heads/<name>``. ``None`` means HEAD.

        Raises:
            BranchError: If nothing resolves
        """
        if start_point is None:
            if not repo.head.is_valid():
                raise BranchError("Cannot create a branch before the first commit", repo_path=repo.working_tree_dir)
            return repo.head.commit

        if start_point in repo.heads:
            return repo.heads[start_point].commit

        candidates = []
        if _FULL_SHA.match(start_point):
            candidates.append(start_point.lower())
        candidates.extend([start_point, f"refs/heads/{start_point}"])

        for candidate in candidates:
            try:
                return repo.commit(candidate)
            except _RESOLVE_ERRORS:
                continue

        raise BranchError(
            f"Cannot resolve start point '{start_point}' to a commit",
            repo_path=repo.working_tree_dir,
        )

    def create(
        self,
        path: Union[str, Path],
        name: str,
        start_point: Optional[str] = None,
        *,
        checkout: bool = False,
    ) -> BranchInfo:
        """
        Create a local branch.

        Args:
            path: Repository path
            name: New branch name
            start_point: Branch, commit or reference to start from (default: HEAD)
            checkout: Switch to the new branch after creating it

        Returns:
            The created branch

        Raises:
            BranchError: If the name is invalid or taken, the start point does
                not resolve, or the checkout is blocked
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            if name in repo.heads:
                raise BranchError(f"Branch '{name}' already exists", repo_path=str(wrapper.path))
            try:
                repo.git.check_ref_format("--branch", name)
            except GitCommandError:
                raise BranchError(f"'{name}' is not a valid branch name", repo_path=str(wrapper.path))

            commit = self.resolve_start_point(repo, start_point)
            try:
                head = repo.create_head(name, commit)
            except (GitCommandError, OSError) as e:
                raise BranchError(
                    f"Failed to create branch '{name}': {getattr(e, 'stderr', e)}",
                    command=f"git branch {name}",
                    repo_path=str(wrapper.path),
                )
            logger.info("Created branch %s at %s", name, commit.hexsha[:7])
            summary = self._summary(head.commit)

        is_current = False
        if checkout:
            switched = self.switch(path, name)
            if not switched.success:
                raise BranchError(switched.message, repo_path=str(path))
            is_current = True

        return BranchInfo(name=name, is_current=is_current, last_commit=summary)

    def switch(self, path: Union[str, Path], name: str) -> SwitchResult:
        """
        Check out a local branch.

        Any changed path, untracked files included, blocks the switch; the
        blocking paths are returned and nothing is touched.

        Raises:
            BranchError: If the branch does not exist or checkout fails
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            if name not in repo.heads:
                raise BranchError(f"Branch '{name}' not found", repo_path=str(wrapper.path))

            if wrapper.current_branch == name:
                return SwitchResult(success=True, message=f"Already on '{name}'")

            blocking = wrapper.status().changed_paths
            if blocking:
                logger.info("Switch to %s blocked by %d uncommitted file(s)", name, len(blocking))
                return SwitchResult(
                    success=False,
                    message="You have uncommitted changes. Commit or stash them before switching branches.",
                    has_uncommitted_changes=True,
                    uncommitted_files=blocking,
                )

            try:
                repo.heads[name].checkout()
            except GitCommandError as e:
                raise BranchError(
                    f"Failed to switch to '{name}': {e.stderr}",
                    command=f"git checkout {name}",
                    return_code=e.status,
                    stderr=e.stderr,
                    repo_path=str(wrapper.path),
                )

        logger.info("Switched to branch %s in %s", name, path)
        return SwitchResult(success=True, message=f"Switched to branch '{name}'")

    def delete(self, path: Union[str, Path], name: str, *, force: bool = False) -> None:
        """
        Delete a local branch.

        Args:
            path: Repository path
            name: Branch name
            force: Delete even if it has commits its upstream lacks

        Raises:
            BranchError: If the branch is checked out, does not exist, or has
                unpushed commits and ``force`` is not set
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            if name not in repo.heads:
                raise BranchError(f"Branch '{name}' not found", repo_path=str(wrapper.path))
            if wrapper.current_branch == name:
                raise BranchError(
                    f"Cannot delete branch '{name}' because it is currently checked out. Switch to another branch first.",
                    repo_path=str(wrapper.path),
                )
            if not force:
                ahead, _behind = wrapper.ahead_behind(name)
                if ahead:
                    raise BranchError(
                        f"Branch '{name}' has {ahead} commit(s) not pushed to its upstream. Use force to delete it anyway.",
                        repo_path=str(wrapper.path),
                    )

            try:
                repo.delete_head(name, force=True)
            except GitCommandError as e:
                raise BranchError(
                    f"Failed to delete branch '{name}': {e.stderr}",
                    command=f"git branch -D {name}",
                    return_code=e.status,
                    stderr=e.stderr,
                    repo_path=str(wrapper.path),
                )
        logger.info("Deleted branch %s in %s", name, path)

    # =========================================================================
    # Remote Branches
    # =========================================================================

    def checkout_remote(
        self,
        path: Union[str, Path],
        remote_branch: str,
        local_name: Optional[str] = None,
    ) -> SwitchResult:
        """
        Create a local branch tracking ``remote_branch`` and switch to it.

        The local name defaults to ``remote_branch`` without its remote prefix.
        If the switch does not happen, the new local branch is removed again.

        Args:
            path: Repository path
            remote_branch: Remote-tracking branch, e.g. ``origin/feature``
            local_name: Name for the local branch

        Raises:
            BranchError: If the remote branch is unknown or the local name is taken
        """
        remote_name, _, branch_name = remote_branch.partition("/")
        if not branch_name:
            raise BranchError(f"'{remote_branch}' is not a remote branch name (expected <remote>/<branch>)")
        local_name = local_name or branch_name

        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            refs = {ref.name: ref for ref in _remote_refs(repo)}
            if remote_branch not in refs:
                raise BranchError(f"Remote branch '{remote_branch}' not found", repo_path=str(wrapper.path))
            if local_name in repo.heads:
                raise BranchError(f"Branch '{local_name}' already exists", repo_path=str(wrapper.path))

            head = repo.create_head(local_name, refs[remote_branch].commit)
            head.set_tracking_branch(refs[remote_branch])
            logger.info("Created %s tracking %s", local_name, remote_branch)

        try:
            result = self.switch(path, local_name)
        except BranchError:
            self._discard(path, local_name)
            raise
        if not result.success:
            self._discard(path, local_name)
        return result

    def _discard(self, path: Union[str, Path], name: str) -> None:
        with GitRepository(path) as wrapper:
            if name in wrapper.repo.heads and wrapper.current_branch != name:
                wrapper.repo.delete_head(name, force=True)
                logger.info("Removed branch %s after failed checkout", name)

    def set_upstream(self, path: Union[str, Path], branch: str, remote_branch: str) -> None:
        """
        Configure ``remote_branch`` as the upstream of ``branch``.

        Raises:
            BranchError: If either branch does not exist
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            if branch not in repo.heads:
                raise BranchError(f"Branch '{branch}' not found", repo_path=str(wrapper.path))
            refs = {ref.name: ref for ref in _remote_refs(repo)}
            if remote_branch not in refs:
                raise BranchError(f"Remote branch '{remote_branch}' not found", repo_path=str(wrapper.path))
            repo.heads[branch].set_tracking_branch(refs[remote_branch])

    def default_remote(self, path: Union[str, Path]) -> str:
        """
        Remote to sync with: upstream remote, then priority list, then first.

        Raises:
            RemoteError: If no remotes are configured
        """
        with GitRepository(path) as wrapper:
            return wrapper.default_remote(self.preferred_remotes)
