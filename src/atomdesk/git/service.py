"""
Async facade over the sync engine.

GitService is what the front end talks to. Every operation runs on a worker
thread so the event loop stays responsive; network operations get their own
OperationContext, which makes them cancellable by id and routes their
progress events to the configured sink.

Example:
    ```python
    service = GitService(SyncSettings(), sink=lambda event: print(event.to_wire()))

    result = await service.clone(
        CloneRequest(url="https://github.com/user/repo.git", destination="/tmp/repo"),
        operation_id="clone-1",
    )
    status = await service.status(result.path)
    sync = await service.pull(result.path, strategy=PullStrategy.REBASE)
    ```
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar, Union

from atomdesk.git.auth import AuthCredential
from atomdesk.git.branches import BranchManager
from atomdesk.git.clone import CloneEngine
from atomdesk.git.credentials import CredentialResolver
from atomdesk.git.executor import DualPathExecutor, ExternalGit
from atomdesk.git.models import (
    Author,
    BranchInfo,
    CloneRequest,
    CloneResult,
    CommitHistoryItem,
    PullStrategy,
    RemoteInfo,
    RepositoryStatus,
    SwitchResult,
    SyncResult,
)
from atomdesk.git.progress import OperationContext, ProgressSink
from atomdesk.git.repository import GitRepository
from atomdesk.git.sync import SyncEngine
from atomdesk.git.transport import EmbeddedTransport
from atomdesk.settings.config import SyncSettings
from atomdesk.settings.secrets import SecretStore
from atomdesk.settings.tokens import TokenCache

logger = logging.getLogger(__name__)

T = TypeVar("T")
PathLike = Union[str, Path]


class GitService:
    """
    Entry point for all repository operations.

    Args:
        settings: Engine configuration (default: from environment)
        token_cache: Token cache (default: file under ``settings.data_dir``)
        secret_store: Credential store (default: file under ``settings.data_dir``)
        sink: Receives ProgressEvent records of network operations
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        token_cache: Optional[TokenCache] = None,
        secret_store: Optional[SecretStore] = None,
        sink: Optional[ProgressSink] = None,
    ):
        self.settings = settings or SyncSettings()
        self.sink = sink

        self.resolver = CredentialResolver.from_settings(
            self.settings,
            token_cache=token_cache,
            secret_store=secret_store,
        )
        self.transport = EmbeddedTransport(
            self.resolver,
            host_key_policy=self.settings.host_key_policy,
            connect_timeout=self.settings.ssh_connect_timeout,
        )
        self.executor = DualPathExecutor(
            ExternalGit(self.settings.git_executable, timeout=self.settings.external_timeout)
        )

        self.clone_engine = CloneEngine(self.resolver, self.transport, self.executor)
        self.sync_engine = SyncEngine(
            self.resolver,
            self.transport,
            self.executor,
            preferred_remotes=self.settings.preferred_remotes,
        )
        self.branches = BranchManager(preferred_remotes=self.settings.preferred_remotes)

        self._operations: dict[str, OperationContext] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Operation bookkeeping
    # =========================================================================

    async def _tracked(
        self,
        func: Callable[..., T],
        *args: Any,
        operation_id: Optional[str] = None,
        sink: Optional[ProgressSink] = None,
        **kwargs: Any,
    ) -> T:
        """Run a cancellable operation on a worker thread."""
        context = OperationContext.create(operation_id, sink=sink or self.sink)
        with self._lock:
            if context.operation_id in self._operations:
                raise ValueError(f"Operation '{context.operation_id}' is already running")
            self._operations[context.operation_id] = context

        try:
            return await asyncio.to_thread(func, *args, context=context, **kwargs)
        finally:
            with self._lock:
                self._operations.pop(context.operation_id, None)
            await asyncio.to_thread(context.close)

    async def _local(self, path: PathLike, func: Callable[[GitRepository], T]) -> T:
        """Run a local repository operation on a worker thread."""

        def run() -> T:
            with GitRepository(path) as repo:
                return func(repo)

        return await asyncio.to_thread(run)

    def cancel(self, operation_id: str) -> bool:
        """
        Request cancellation of a running operation.

        Cancellation is checked between stages, so an in-flight transfer
        finishes its current stage first.

        Returns:
            False if no operation with that id is running
        """
        with self._lock:
            context = self._operations.get(operation_id)
        if context is None:
            return False
        logger.info("Cancellation requested for operation %s", operation_id)
        context.cancel()
        return True

    def is_cancelled(self, operation_id: str) -> bool:
        with self._lock:
            context = self._operations.get(operation_id)
        return context is not None and context.is_cancelled

    def clear_cancellation(self, operation_id: str) -> None:
        with self._lock:
            context = self._operations.get(operation_id)
        if context is not None:
            context.cancel_token.clear()

    @property
    def running_operations(self) -> list[str]:
        with self._lock:
            return sorted(self._operations)

    # =========================================================================
    # Clone
    # =========================================================================

    async def clone(
        self,
        request: CloneRequest,
        *,
        operation_id: Optional[str] = None,
        sink: Optional[ProgressSink] = None,
    ) -> CloneResult:
        return await self._tracked(self.clone_engine.clone, request, operation_id=operation_id, sink=sink)

    # =========================================================================
    # Status, diff and commits
    # =========================================================================

    async def status(self, path: PathLike) -> RepositoryStatus:
        return await self._local(path, lambda repo: repo.status())

    async def diff(self, path: PathLike, file_path: str, *, staged: bool = False) -> str:
        return await self._local(path, lambda repo: repo.diff(file_path, staged=staged))

    async def file_stats(self, path: PathLike, file_path: str, *, staged: bool = False) -> tuple[int, int]:
        return await self._local(path, lambda repo: repo.file_stats(file_path, staged=staged))

    async def stage(self, path: PathLike, files: list[str]) -> None:
        await self._local(path, lambda repo: repo.stage(files))

    async def unstage(self, path: PathLike, files: list[str]) -> None:
        await self._local(path, lambda repo: repo.unstage(files))

    async def commit(
        self,
        path: PathLike,
        message: str,
        *,
        description: Optional[str] = None,
        author: Optional[Author] = None,
        amend: bool = False,
        signoff: bool = False,
    ) -> str:
        """Commit the index; returns the new commit SHA."""
        return await self._local(
            path,
            lambda repo: repo.commit(
                message,
                description=description,
                author=author,
                amend=amend,
                signoff=signoff,
            ),
        )

    async def history(self, path: PathLike, limit: int = 50, skip: int = 0) -> list[CommitHistoryItem]:
        return await self._local(path, lambda repo: repo.history(limit=limit, skip=skip))

    async def remotes(self, path: PathLike) -> list[RemoteInfo]:
        return await self._local(path, lambda repo: repo.remotes())

    async def current_branch(self, path: PathLike) -> Optional[str]:
        return await self._local(path, lambda repo: repo.current_branch)

    async def ahead_behind(self, path: PathLike) -> tuple[int, int]:
        return await self._local(path, lambda repo: repo.ahead_behind())

    # =========================================================================
    # Sync
    # =========================================================================

    async def fetch(
        self,
        path: PathLike,
        remote: Optional[str] = None,
        *,
        credential: Optional[AuthCredential] = None,
        operation_id: Optional[str] = None,
    ) -> SyncResult:
        return await self._tracked(
            self.sync_engine.fetch,
            path,
            remote,
            credential=credential,
            operation_id=operation_id,
        )

    async def pull(
        self,
        path: PathLike,
        remote: Optional[str] = None,
        *,
        strategy: PullStrategy = PullStrategy.MERGE,
        credential: Optional[AuthCredential] = None,
        operation_id: Optional[str] = None,
    ) -> SyncResult:
        return await self._tracked(
            self.sync_engine.pull,
            path,
            remote,
            strategy=strategy,
            credential=credential,
            operation_id=operation_id,
        )

    async def push(
        self,
        path: PathLike,
        remote: Optional[str] = None,
        *,
        force: bool = False,
        credential: Optional[AuthCredential] = None,
        operation_id: Optional[str] = None,
    ) -> SyncResult:
        return await self._tracked(
            self.sync_engine.push,
            path,
            remote,
            force=force,
            credential=credential,
            operation_id=operation_id,
        )

    # =========================================================================
    # Branches
    # =========================================================================

    async def list_branches(self, path: PathLike) -> list[BranchInfo]:
        return await asyncio.to_thread(self.branches.list_branches, path)

    async def create_branch(
        self,
        path: PathLike,
        name: str,
        start_point: Optional[str] = None,
        *,
        checkout: bool = False,
    ) -> BranchInfo:
        return await asyncio.to_thread(self.branches.create, path, name, start_point, checkout=checkout)

    async def switch_branch(self, path: PathLike, name: str) -> SwitchResult:
        return await asyncio.to_thread(self.branches.switch, path, name)

    async def delete_branch(self, path: PathLike, name: str, *, force: bool = False) -> None:
        await asyncio.to_thread(self.branches.delete, path, name, force=force)

    async def checkout_remote_branch(
        self,
        path: PathLike,
        remote_branch: str,
        local_name: Optional[str] = None,
    ) -> SwitchResult:
        return await asyncio.to_thread(self.branches.checkout_remote, path, remote_branch, local_name)

    # =========================================================================
    # Credentials
    # =========================================================================

    def store_credential(self, url: str, credential: AuthCredential) -> None:
        """Remember a credential for ``url`` in the secret store."""
        self.resolver.store(url, credential)

    def forget_credential(self, url: str) -> None:
        self.resolver.forget(url)
