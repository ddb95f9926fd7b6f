"""
Sync engine.

Fetch, pull and push against a remote. Pull integrates the upstream branch
by fast-forward, three-way merge or rebase. Conflicts are reported in the
returned SyncResult and never leave a partial commit or a half-applied
rebase behind.

Example:
    ```python
    engine = SyncEngine(resolver, transport, DualPathExecutor())
    result = engine.pull("/path/to/repo", strategy=PullStrategy.REBASE)
    if result.has_conflicts:
        print("Conflicts in:", ", ".join(result.conflicted_files))
    ```
"""

import logging
import tempfile
from pathlib import Path
from typing import Optional, Union

from git import Blob, GitCommandError, IndexFile, RemoteReference, Repo
from git.objects import Commit as GitCommit

from atomdesk.git.auth import AuthCredential, mask_credentials
from atomdesk.git.credentials import CredentialResolver
from atomdesk.git.exceptions import ExternalToolFailedError, LibraryError
from atomdesk.git.executor import DualPathExecutor, ExternalGit
from atomdesk.git.models import PullStrategy, SyncResult
from atomdesk.git.progress import OperationContext
from atomdesk.git.repository import GitRepository
from atomdesk.git.transport import EmbeddedTransport, is_push_rejected
from atomdesk.settings.config import DEFAULT_REMOTE_PRIORITY

logger = logging.getLogger(__name__)

MERGE_CONFLICT_MESSAGE = "Merge conflicts detected. Please resolve conflicts manually."
REBASE_CONFLICT_MESSAGE = "Rebase stopped by conflicts and was aborted. Please resolve conflicts manually."
DIRTY_TREE_MESSAGE = "Local changes would be overwritten. Commit or stash them before pulling."

# Submodule entries have no content to merge.
_GITLINK_MODE = 0o160000


def _merge_file(repo: Repo, path: str, stages: dict[int, Blob], scratch: Path) -> Optional[Blob]:
    """
    Content-merge one path changed on both sides.

    Returns:
        The merged blob, or None if the path conflicts
    """
    base, ours, theirs = stages.get(1), stages.get(2), stages.get(3)
    if base is None or ours is None or theirs is None:
        # add/add or modify/delete
        return None
    if _GITLINK_MODE in (base.mode, ours.mode, theirs.mode):
        return None

    files = []
    for name, blob in (("ours", ours), ("base", base), ("theirs", theirs)):
        target = scratch / name
        target.write_bytes(blob.data_stream.read())
        files.append(str(target))

    status, _out, _err = repo.git.merge_file("-q", *files, with_extended_output=True, with_exceptions=False)
    if status != 0:
        return None

    sha = repo.git.hash_object("-w", "--no-filters", files[0])
    mode = ours.mode if ours.mode != base.mode else theirs.mode
    return Blob(repo, bytes.fromhex(sha), mode, path)


def merge_trees(
    repo: Repo, base: GitCommit, ours: GitCommit, theirs: GitCommit
) -> tuple[Optional[str], list[str]]:
    """
    Three-way merge of two commits in object space.

    The merge is read into a temporary index, so neither the repository's
    index nor its working tree is touched. Paths changed on both sides are
    content-merged line by line.

    Args:
        repo: Repository holding the commits
        base: Merge base
        ours: Commit the result is based on
        theirs: Commit merged in

    Returns:
        (tree SHA, conflicted paths); the tree SHA is None when paths conflict

    Raises:
        LibraryError: If git cannot compute the merge
    """
    try:
        index = IndexFile.from_tree(repo, base, ours, theirs)
        unmerged = index.unmerged_blobs()

        resolved: list[Blob] = []
        conflicts: list[str] = []
        with tempfile.TemporaryDirectory(prefix="atomdesk-merge-") as scratch:
            for path, stages in unmerged.items():
                merged = _merge_file(repo, str(path), dict(stages), Path(scratch))
                if merged is None:
                    conflicts.append(str(path))
                else:
                    resolved.append(merged)

        if conflicts:
            return None, sorted(conflicts)
        index.resolve_blobs(resolved)
        return index.write_tree().hexsha, []
    except GitCommandError as e:
        raise LibraryError(
            f"Failed to merge {theirs.hexsha[:7]} into {ours.hexsha[:7]}: {e.stderr}",
            command="git read-tree -m",
            return_code=e.status,
            stderr=e.stderr,
            repo_path=str(repo.working_tree_dir),
        )


class RebaseSession:
    """
    Replays local commits onto a new base, one step at a time.

    Steps create commits in the object database only. The branch, index and
    working tree move in :meth:`finish`; :meth:`abort` simply discards the
    replayed commits, so HEAD and the index keep their pre-rebase state.

    Example:
        ```python
        session = RebaseSession(repo, repo.active_branch, upstream_commit)
        while (commit := session.next()) is not None:
            if not session.apply(commit):
                session.abort()
                break
        else:
            session.finish()
        ```
    """

    def __init__(self, repo: Repo, branch, onto: GitCommit):
        self.repo = repo
        self.branch = branch
        self.orig_head = branch.commit
        self.onto = onto
        self.tip = onto
        self.conflicts: list[str] = []
        self.applied = 0
        self.skipped = 0
        # Oldest first; merge commits are flattened away as git rebase does.
        self._todo = [
            c
            for c in repo.iter_commits(f"{onto.hexsha}..{self.orig_head.hexsha}", reverse=True)
            if len(c.parents) == 1
        ]
        self._position = 0

    @property
    def total(self) -> int:
        return len(self._todo)

    def next(self) -> Optional[GitCommit]:
        if self._position >= len(self._todo):
            return None
        commit = self._todo[self._position]
        self._position += 1
        return commit

    def apply(self, commit: GitCommit) -> bool:
        """
        Replay one commit onto the current tip.

        Returns:
            False if the step conflicts; the conflicted paths are in ``conflicts``
        """
        tree_sha, conflicts = merge_trees(self.repo, commit.parents[0], self.tip, commit)
        if conflicts:
            self.conflicts = conflicts
            logger.info("Rebase step %s conflicts in %s", commit.hexsha[:7], ", ".join(conflicts))
            return False

        if tree_sha == self.tip.tree.hexsha:
            # Already upstream.
            self.skipped += 1
            return True

        self.tip = GitCommit.create_from_tree(
            self.repo,
            self.repo.tree(tree_sha),
            commit.message,
            parent_commits=[self.tip],
            head=False,
            author=commit.author,
            author_date=commit.authored_datetime,
        )
        self.applied += 1
        return True

    def abort(self) -> None:
        logger.info(
            "Aborting rebase of %s; HEAD stays at %s",
            self.branch.name,
            self.orig_head.hexsha[:7],
        )

    def finish(self) -> None:
        """Move the branch to the rebased tip and update index and working tree."""
        self.branch.commit = self.tip
        self.repo.head.reference = self.branch
        self.repo.head.reset(index=True, working_tree=True)


class SyncEngine:
    """Fetch, pull and push through the dual-path executor."""

    def __init__(
        self,
        resolver: CredentialResolver,
        transport: EmbeddedTransport,
        executor: Optional[DualPathExecutor] = None,
        *,
        preferred_remotes: Optional[list[str]] = None,
    ):
        self.resolver = resolver
        self.transport = transport
        self.executor = executor or DualPathExecutor()
        self.preferred_remotes = preferred_remotes or list(DEFAULT_REMOTE_PRIORITY)

    def _remote(self, path: Union[str, Path], remote: Optional[str]) -> tuple[str, str]:
        with GitRepository(path) as repo:
            name = remote or repo.default_remote(self.preferred_remotes)
            return name, repo.remote_url(name)

    # =========================================================================
    # Fetch
    # =========================================================================

    def fetch(
        self,
        path: Union[str, Path],
        remote: Optional[str] = None,
        *,
        credential: Optional[AuthCredential] = None,
        context: Optional[OperationContext] = None,
    ) -> SyncResult:
        """
        Fetch all configured refspecs of a remote.

        Args:
            path: Repository path
            remote: Remote name (default: detected)
            credential: Explicit credential; resolved from the URL when omitted
            context: Operation context for cancellation

        Returns:
            SyncResult with ahead/behind of the current branch
        """
        context = context or OperationContext.create()
        remote_name, url = self._remote(path, remote)
        context.check_cancelled("fetch")

        logger.info("Fetching %s (%s) into %s", remote_name, mask_credentials(url), path)
        attempts = self.resolver.resolve(url, credential)

        def external_fetch(git: ExternalGit) -> None:
            git.fetch(path, remote_name)

        self.executor.run(
            "fetch",
            url,
            embedded=lambda: self.transport.fetch(path, remote_name, url, attempts),
            external=external_fetch,
            ssh_command=self.transport.fallback_ssh_command(attempts),
        )

        with GitRepository(path) as repo:
            ahead, behind = repo.ahead_behind()
        return SyncResult.ok(f"Fetched from {remote_name}", ahead=ahead, behind=behind)

    # =========================================================================
    # Pull
    # =========================================================================

    def pull(
        self,
        path: Union[str, Path],
        remote: Optional[str] = None,
        *,
        strategy: PullStrategy = PullStrategy.MERGE,
        credential: Optional[AuthCredential] = None,
        context: Optional[OperationContext] = None,
    ) -> SyncResult:
        """
        Fetch, then integrate the upstream of the current branch.

        Returns:
            SyncResult; conflicts are reported with ``has_conflicts=True``
        """
        context = context or OperationContext.create()
        fetched = self.fetch(path, remote, credential=credential, context=context)
        if not fetched.success:
            return fetched

        context.check_cancelled("integrating upstream")
        return self.integrate(path, strategy)

    def integrate(self, path: Union[str, Path], strategy: PullStrategy = PullStrategy.MERGE) -> SyncResult:
        """
        Bring the current branch up to date with its fetched upstream.

        Fast-forwards when the upstream descends from HEAD, otherwise merges
        or rebases according to ``strategy``.
        """
        with GitRepository(path) as wrapper:
            repo = wrapper.repo
            if repo.head.is_detached:
                return SyncResult.failed("HEAD is detached. Check out a branch before pulling.")

            branch = repo.active_branch
            tracking = branch.tracking_branch()
            if tracking is None or not tracking.is_valid():
                return SyncResult.failed(f"Branch '{branch.name}' has no upstream branch")

            local = branch.commit
            upstream = tracking.commit
            if local == upstream:
                return SyncResult.ok("Already up to date")

            bases = repo.merge_base(local, upstream)
            if not bases:
                return SyncResult.failed(f"Refusing to merge unrelated histories of '{branch.name}' and '{tracking.name}'")
            base = bases[0]

            if base == upstream:
                ahead, behind = wrapper.ahead_behind()
                return SyncResult.ok("Already up to date", ahead=ahead, behind=behind)

            if wrapper.has_uncommitted_changes():
                return SyncResult.failed(DIRTY_TREE_MESSAGE)

            if base == local:
                result = self._fast_forward(repo, branch, upstream, tracking)
            elif strategy == PullStrategy.REBASE:
                result = self._rebase(repo, branch, upstream, tracking)
            else:
                result = self._merge(repo, branch, base, local, upstream, tracking)

            if result.success:
                ahead, behind = wrapper.ahead_behind()
                result = result.model_copy(update={"ahead": ahead, "behind": behind})
            return result

    def _fast_forward(self, repo: Repo, branch, upstream: GitCommit, tracking: RemoteReference) -> SyncResult:
        logger.info("Fast-forwarding %s to %s", branch.name, upstream.hexsha[:7])
        try:
            branch.commit = upstream
            repo.head.reset(index=True, working_tree=True)
        except GitCommandError as e:
            raise LibraryError(
                f"Failed to fast-forward '{branch.name}': {e.stderr}",
                command="git reset --hard",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(repo.working_tree_dir),
            )
        return SyncResult.ok(f"Fast-forwarded to {tracking.name}")

    def _merge(
        self,
        repo: Repo,
        branch,
        base: GitCommit,
        local: GitCommit,
        upstream: GitCommit,
        tracking: RemoteReference,
    ) -> SyncResult:
        tree_sha, conflicts = merge_trees(repo, base, local, upstream)
        if conflicts:
            logger.info("Merge of %s into %s conflicts in %d file(s)", tracking.name, branch.name, len(conflicts))
            return SyncResult.conflict(MERGE_CONFLICT_MESSAGE, conflicts)

        message = f"Merge branch '{tracking.name}' into {branch.name}"
        try:
            merge_commit = GitCommit.create_from_tree(
                repo,
                repo.tree(tree_sha),
                message,
                parent_commits=[local, upstream],
                head=True,
            )
            repo.head.reset(index=True, working_tree=True)
        except GitCommandError as e:
            raise LibraryError(
                f"Failed to write merge commit: {e.stderr}",
                command="git commit-tree",
                return_code=e.status,
                stderr=e.stderr,
                repo_path=str(repo.working_tree_dir),
            )
        logger.info("Created merge commit %s on %s", merge_commit.hexsha[:7], branch.name)
        return SyncResult.ok(f"Merged {tracking.name}")

    def _rebase(self, repo: Repo, branch, upstream: GitCommit, tracking: RemoteReference) -> SyncResult:
        session = RebaseSession(repo, branch, upstream)
        logger.info("Rebasing %d commit(s) of %s onto %s", session.total, branch.name, tracking.name)

        try:
            while (commit := session.next()) is not None:
                if not session.apply(commit):
                    session.abort()
                    return SyncResult.conflict(REBASE_CONFLICT_MESSAGE, session.conflicts)
            session.finish()
        except (GitCommandError, LibraryError, ValueError):
            session.abort()
            raise

        return SyncResult.ok(f"Rebased {session.applied} commit(s) onto {tracking.name}")

    # =========================================================================
    # Push
    # =========================================================================

    def push(
        self,
        path: Union[str, Path],
        remote: Optional[str] = None,
        *,
        force: bool = False,
        credential: Optional[AuthCredential] = None,
        context: Optional[OperationContext] = None,
    ) -> SyncResult:
        """
        Push the current branch to the same-named remote branch.

        Args:
            path: Repository path
            remote: Remote name (default: detected)
            force: Permit a non-fast-forward update
            credential: Explicit credential; resolved from the URL when omitted
            context: Operation context for cancellation

        Returns:
            SyncResult; a non-fast-forward rejection is reported, not raised
        """
        context = context or OperationContext.create()
        with GitRepository(path) as repo:
            branch = repo.current_branch
            if branch is None:
                return SyncResult.failed("HEAD is detached. Check out a branch before pushing.")
            if repo.current_commit is None:
                return SyncResult.failed(f"Branch '{branch}' has no commits to push")
        remote_name, url = self._remote(path, remote)
        context.check_cancelled("push")

        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        if force:
            refspec = "+" + refspec

        logger.info("Pushing %s to %s (%s)%s", branch, remote_name, mask_credentials(url), " with force" if force else "")
        attempts = self.resolver.resolve(url, credential)

        def external_push(git: ExternalGit) -> None:
            git.push(path, remote_name, refspec)

        try:
            self.executor.run(
                "push",
                url,
                embedded=lambda: self.transport.push(path, remote_name, url, refspec, attempts),
                external=external_push,
                ssh_command=self.transport.fallback_ssh_command(attempts),
            )
        except (LibraryError, ExternalToolFailedError) as e:
            if not is_push_rejected(e):
                raise
            return SyncResult.failed(
                f"Push to {remote_name} was rejected because the remote contains commits "
                f"you do not have. Pull first or push with force."
            )

        with GitRepository(path) as wrapper:
            self._update_tracking(wrapper.repo, remote_name, branch)
            ahead, behind = wrapper.ahead_behind()
        return SyncResult.ok(f"Pushed {branch} to {remote_name}", ahead=ahead, behind=behind)

    @staticmethod
    def _update_tracking(repo: Repo, remote_name: str, branch_name: str) -> None:
        """Point ``<remote>/<branch>`` at the pushed commit and track it if untracked."""
        head = repo.heads[branch_name]
        tracking_path = f"refs/remotes/{remote_name}/{branch_name}"
        repo.git.update_ref(tracking_path, head.commit.hexsha)
        if head.tracking_branch() is None:
            head.set_tracking_branch(RemoteReference(repo, tracking_path))
