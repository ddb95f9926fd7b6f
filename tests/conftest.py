"""Shared fixtures: a bare remote reachable by file:// URL and clones of it."""

import tempfile
from pathlib import Path

import pytest
from git import Repo


def configure_identity(repo: Repo) -> None:
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test User")
        config.set_value("user", "email", "test@example.com")


def commit_file(repo: Repo, name: str, content: str, message: str) -> str:
    """Write, stage and commit one file; returns the commit SHA."""
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message).hexsha


def clone_repo(url: str, destination: Path) -> Repo:
    """Clone with the git CLI, the way another developer's machine would."""
    repo = Repo.clone_from(url, destination)
    configure_identity(repo)
    return repo


class RemoteFixture:
    """A bare ``origin`` with one commit on ``main``."""

    def __init__(self, root: Path):
        self.root = root
        self.bare_path = root / "origin.git"
        self.url = self.bare_path.as_uri()

        Repo.init(self.bare_path, bare=True, initial_branch="main").close()

        seed = Repo.init(root / "seed", initial_branch="main")
        configure_identity(seed)
        commit_file(seed, "README.md", "# Project\n", "Initial commit")
        seed.create_remote("origin", self.url)
        seed.git.push("origin", "main")
        seed.close()

    def clone(self, name: str) -> Repo:
        return clone_repo(self.url, self.root / name)

    def head(self, branch: str = "main") -> str:
        with Repo(self.bare_path) as bare:
            return bare.heads[branch].commit.hexsha


@pytest.fixture
def workspace():
    """Temporary directory for repositories."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def remote(workspace):
    """Bare remote with an initial commit."""
    return RemoteFixture(workspace)
