"""
Clone engine.

Validates the request, runs the clone through the dual-path executor while
reporting staged progress, optionally initializes submodules, and collects
statistics about the result.

Example:
    ```python
    engine = CloneEngine(resolver, transport, DualPathExecutor())
    result = engine.clone(
        CloneRequest(url="https://github.com/user/repo.git", destination="/tmp/repo"),
        OperationContext.create(sink=print),
    )
    print(result.stats.object_count, result.stats.file_count)
    ```
"""

import logging
import time
from pathlib import Path
from typing import Optional

from dulwich.repo import Repo as DulwichRepo
from git import GitCommandError, RemoteReference, Repo

from atomdesk.git.auth import UrlScheme, classify_url, mask_credentials
from atomdesk.git.credentials import CredentialResolver
from atomdesk.git.exceptions import DirectoryExistsError, GitError, InvalidUrlError
from atomdesk.git.executor import DualPathExecutor, ExternalGit
from atomdesk.git.models import CloneRequest, CloneResult, CloneStats, ProgressStage
from atomdesk.git.progress import (
    OperationContext,
    ProgressReporter,
    SidebandProgressParser,
    TransferProgress,
)
from atomdesk.git.transport import EmbeddedTransport, reset_destination

logger = logging.getLogger(__name__)

CONNECTING_PERCENT = 10
CHECKOUT_PERCENT = 80
SUBMODULE_START_PERCENT = 85
SUBMODULE_END_PERCENT = 95


def validate_url(url: str) -> str:
    """
    Check that a clone URL is non-empty and has a known scheme.

    Raises:
        InvalidUrlError: If the URL is empty or its scheme is unknown
    """
    url = (url or "").strip()
    if not url:
        raise InvalidUrlError("Repository URL is required")
    if classify_url(url) == UrlScheme.UNKNOWN:
        raise InvalidUrlError(
            f"Unsupported repository URL '{url}': expected https://, http://, ssh://, user@host: or file://"
        )
    return url


def check_destination(destination: Path) -> None:
    """
    Refuse a destination that exists and is not an empty directory.

    The directory is only inspected, never modified.

    Raises:
        DirectoryExistsError: If the destination is a file or a non-empty directory
    """
    if not destination.exists():
        return
    if not destination.is_dir() or any(destination.iterdir()):
        raise DirectoryExistsError(
            f"Destination '{destination}' already exists and is not empty",
            repo_path=str(destination),
        )


def collect_stats(path: Path, started: float, transfer: TransferProgress) -> CloneStats:
    """Elapsed time, object count of the object database and working-tree file count."""
    repo = DulwichRepo(str(path))
    try:
        object_count = sum(1 for _ in repo.object_store)
    finally:
        repo.close()

    file_count = sum(
        1
        for p in path.rglob("*")
        if ".git" not in p.relative_to(path).parts and p.is_file()
    )

    return CloneStats(
        duration_ms=int((time.monotonic() - started) * 1000),
        received_bytes=transfer.received_bytes,
        object_count=object_count,
        file_count=file_count,
    )


class CloneEngine:
    """Clones repositories with live progress and SSH fallback."""

    def __init__(
        self,
        resolver: CredentialResolver,
        transport: EmbeddedTransport,
        executor: Optional[DualPathExecutor] = None,
    ):
        self.resolver = resolver
        self.transport = transport
        self.executor = executor or DualPathExecutor()

    def clone(self, request: CloneRequest, context: Optional[OperationContext] = None) -> CloneResult:
        """
        Clone a repository.

        Args:
            request: What to clone and where
            context: Operation context for progress and cancellation

        Returns:
            CloneResult with statistics

        Raises:
            InvalidUrlError: If the URL is empty or unsupported
            DirectoryExistsError: If the destination is not empty
            AuthenticationFailedError: If every credential was rejected
            LibraryError: If the embedded clone failed for a non-SSH reason
            GitError: If the external clone failed
            OperationCancelledError: If cancelled between stages
        """
        context = context or OperationContext.create()
        reporter = ProgressReporter(context)
        started = time.monotonic()

        try:
            url = validate_url(request.url)
            destination = Path(request.destination).expanduser().resolve()
            check_destination(destination)
            return self._clone(url, destination, request, context, reporter, started)
        except GitError as e:
            reporter.fail(e.message)
            raise

    def _clone(
        self,
        url: str,
        destination: Path,
        request: CloneRequest,
        context: OperationContext,
        reporter: ProgressReporter,
        started: float,
    ) -> CloneResult:
        logger.info("Cloning %s into %s", mask_credentials(url), destination)
        reporter.report(ProgressStage.INITIALIZING, 0, "Preparing clone")
        existed = destination.exists()
        destination.parent.mkdir(parents=True, exist_ok=True)

        context.check_cancelled("connecting")
        attempts = self.resolver.resolve(url, request.credential)
        reporter.report(ProgressStage.CONNECTING, CONNECTING_PERCENT, f"Connecting to {mask_credentials(url)}")

        def on_transfer(transfer: TransferProgress, line: str) -> None:
            stage = ProgressStage.DOWNLOADING
            if transfer.indexed_objects:
                stage = ProgressStage.UNPACKING
            reporter.report(stage, transfer.percent(), line, transfer.counters())

        parser = SidebandProgressParser(on_transfer)

        def external_clone(git: ExternalGit) -> None:
            git.clone(
                url,
                destination,
                branch=request.branch,
                depth=request.depth,
                recursive=request.recursive,
                progress=parser,
            )

        used_external = self.executor.run(
            "clone",
            url,
            embedded=lambda: self.transport.clone(
                url,
                destination,
                attempts,
                branch=request.branch,
                depth=request.depth,
                errstream=parser,
            ),
            external=external_clone,
            ssh_command=self.transport.fallback_ssh_command(attempts),
            before_fallback=lambda: reset_destination(destination, existed),
        )
        parser.flush()

        context.check_cancelled("checkout")
        reporter.report(ProgressStage.CHECKING_OUT, CHECKOUT_PERCENT, "Checking out files")

        repo = Repo(destination)
        try:
            _ensure_upstream(repo)
            if request.recursive and not used_external:
                self._update_submodules(repo, context, reporter)
            branch = None if repo.head.is_detached else repo.active_branch.name
            commit = repo.head.commit.hexsha if repo.head.is_valid() else None
        finally:
            repo.close()

        stats = collect_stats(destination, started, parser.transfer)
        reporter.complete("Clone completed")
        logger.info(
            "Cloned %s in %d ms (%d objects, %d files%s)",
            mask_credentials(url),
            stats.duration_ms,
            stats.object_count,
            stats.file_count,
            ", external git" if used_external else "",
        )
        return CloneResult(
            path=destination,
            branch=branch,
            commit=commit,
            stats=stats,
            used_external=used_external,
        )

    def _update_submodules(self, repo: Repo, context: OperationContext, reporter: ProgressReporter) -> None:
        """Initialize and update submodules one at a time."""
        submodules = list(repo.submodules)
        if not submodules:
            return

        span = SUBMODULE_END_PERCENT - SUBMODULE_START_PERCENT
        for number, submodule in enumerate(submodules):
            context.check_cancelled(f"submodule {submodule.name}")
            percent = SUBMODULE_START_PERCENT + span * number // len(submodules)
            reporter.report(ProgressStage.CHECKING_OUT, percent, f"Updating submodule {submodule.name}")
            try:
                submodule.update(init=True, recursive=True)
            except (GitCommandError, ValueError, OSError) as e:
                logger.warning("Failed to update submodule %s: %s", submodule.name, e)


def _ensure_upstream(repo: Repo) -> None:
    """Track ``origin/<branch>`` when the clone left the branch without an upstream."""
    if repo.head.is_detached or not repo.head.is_valid():
        return
    branch = repo.active_branch
    if branch.tracking_branch() is not None:
        return
    candidates = [
        ref
        for ref in repo.references
        if isinstance(ref, RemoteReference) and ref.remote_head == branch.name
    ]
    candidates.sort(key=lambda ref: ref.remote_name != "origin")
    if candidates:
        branch.set_tracking_branch(candidates[0])
