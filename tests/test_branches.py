"""Tests for BranchManager."""

from pathlib import Path

import pytest

from atomdesk.git.branches import BranchManager
from atomdesk.git.exceptions import BranchError

from conftest import commit_file


@pytest.fixture
def manager():
    return BranchManager()


@pytest.fixture
def repo(remote):
    """Clone of the remote; the remote also has a ``feature`` branch."""
    seed = remote.clone("publisher")
    seed.create_head("feature").checkout()
    commit_file(seed, "feature.txt", "feature\n", "Feature work")
    seed.git.push("origin", "feature")
    seed.close()

    clone = remote.clone("local")
    yield clone
    clone.close()


class TestListBranches:
    """Tests for listing branches."""

    def test_local_then_remote(self, manager, repo):
        """Local branches come first; remote HEAD is excluded."""
        commit_file(repo, "local.txt", "x\n", "Local work")

        branches = manager.list_branches(repo.working_tree_dir)
        names = [b.name for b in branches]

        assert names[0] == "main"
        assert "origin/main" in names
        assert "origin/feature" in names
        assert "origin/HEAD" not in names

        main = branches[0]
        assert main.is_current
        assert not main.is_remote
        assert main.upstream == "origin/main"
        assert (main.ahead, main.behind) == (1, 0)
        assert main.last_commit.subject == "Local work"

        remote_branches = [b for b in branches if b.is_remote]
        assert all(not b.is_current for b in remote_branches)
        assert all(b.upstream is None for b in remote_branches)


class TestCreateAndSwitch:
    """Tests for create and switch."""

    def test_create_from_short_sha_and_switch(self, manager, repo):
        """A short hash resolves as a start point."""
        first = repo.head.commit.hexsha
        commit_file(repo, "second.txt", "2\n", "Second")

        info = manager.create(repo.working_tree_dir, "feature/x", first[:7])
        assert info.name == "feature/x"
        assert not info.is_current
        assert info.last_commit.sha == first
        assert repo.active_branch.name == "main"

        result = manager.switch(repo.working_tree_dir, "feature/x")
        assert result.success
        assert result.message == "Switched to branch 'feature/x'"
        assert repo.active_branch.name == "feature/x"
        assert repo.head.commit.hexsha == first
        assert not (Path(repo.working_tree_dir) / "second.txt").exists()

    def test_create_with_checkout(self, manager, repo):
        """Test creating and switching in one call."""
        info = manager.create(repo.working_tree_dir, "topic", checkout=True)
        assert info.is_current
        assert repo.active_branch.name == "topic"

    def test_create_from_branch_name(self, manager, repo):
        """Test using a remote branch as start point."""
        info = manager.create(repo.working_tree_dir, "copy", "origin/feature")
        assert info.last_commit.subject == "Feature work"

    def test_create_existing_name(self, manager, repo):
        """Test that a taken name is rejected."""
        with pytest.raises(BranchError):
            manager.create(repo.working_tree_dir, "main")

    def test_create_invalid_name(self, manager, repo):
        """Test that an invalid ref name is rejected."""
        with pytest.raises(BranchError) as exc_info:
            manager.create(repo.working_tree_dir, "bad..name")
        assert "not a valid branch name" in exc_info.value.message
        assert "bad..name" not in [h.name for h in repo.heads]

    def test_invalid_start_point(self, manager, repo):
        """Test that an unresolvable start point is rejected."""
        with pytest.raises(BranchError):
            manager.create(repo.working_tree_dir, "topic", "no-such-ref")
        assert "topic" not in [h.name for h in repo.heads]

    def test_switch_already_on(self, manager, repo):
        """Test switching to the current branch."""
        result = manager.switch(repo.working_tree_dir, "main")
        assert result.success
        assert result.message == "Already on 'main'"

    def test_switch_missing_branch(self, manager, repo):
        """Test switching to an unknown branch."""
        with pytest.raises(BranchError):
            manager.switch(repo.working_tree_dir, "nope")

    def test_switch_blocked_by_changes(self, manager, repo):
        """Uncommitted tracked changes block the switch and stay in place."""
        manager.create(repo.working_tree_dir, "topic")
        readme = Path(repo.working_tree_dir) / "README.md"
        readme.write_text("edited\n")

        result = manager.switch(repo.working_tree_dir, "topic")

        assert not result.success
        assert result.has_uncommitted_changes
        assert result.uncommitted_files == ["README.md"]
        assert "uncommitted changes" in result.message
        assert repo.active_branch.name == "main"
        assert readme.read_text() == "edited\n"

    def test_untracked_file_blocks_switch(self, manager, repo):
        """An untracked file that the target branch also tracks blocks the switch."""
        manager.create(repo.working_tree_dir, "copy", "origin/feature")
        scratch = Path(repo.working_tree_dir) / "feature.txt"
        scratch.write_text("scratch\n")

        result = manager.switch(repo.working_tree_dir, "copy")

        assert not result.success
        assert result.has_uncommitted_changes
        assert result.uncommitted_files == ["feature.txt"]
        assert repo.active_branch.name == "main"
        assert scratch.read_text() == "scratch\n"


class TestDelete:
    """Tests for delete."""

    def test_delete_merged_branch(self, manager, repo):
        """Test deleting a branch with nothing unpushed."""
        manager.create(repo.working_tree_dir, "topic")
        manager.delete(repo.working_tree_dir, "topic")
        assert "topic" not in [h.name for h in repo.heads]

    def test_delete_current_branch(self, manager, repo):
        """The checked-out branch cannot be deleted."""
        with pytest.raises(BranchError) as exc_info:
            manager.delete(repo.working_tree_dir, "main")
        assert "currently checked out" in exc_info.value.message

    def test_delete_unpushed_requires_force(self, manager, repo):
        """A branch ahead of its upstream needs force."""
        manager.checkout_remote(repo.working_tree_dir, "origin/feature")
        commit_file(repo, "more.txt", "more\n", "Unpushed")
        manager.switch(repo.working_tree_dir, "main")

        with pytest.raises(BranchError) as exc_info:
            manager.delete(repo.working_tree_dir, "feature")
        assert "not pushed" in exc_info.value.message
        assert "feature" in [h.name for h in repo.heads]

        manager.delete(repo.working_tree_dir, "feature", force=True)
        assert "feature" not in [h.name for h in repo.heads]

    def test_delete_missing_branch(self, manager, repo):
        """Test deleting an unknown branch."""
        with pytest.raises(BranchError):
            manager.delete(repo.working_tree_dir, "nope")


class TestRemoteBranches:
    """Tests for checkout_remote and set_upstream."""

    def test_checkout_remote_creates_tracking_branch(self, manager, repo):
        """Test that the local branch tracks the remote branch."""
        result = manager.checkout_remote(repo.working_tree_dir, "origin/feature")

        assert result.success
        assert repo.active_branch.name == "feature"
        assert repo.active_branch.tracking_branch().name == "origin/feature"
        assert (Path(repo.working_tree_dir) / "feature.txt").exists()

    def test_checkout_remote_custom_name(self, manager, repo):
        """Test choosing the local name."""
        manager.checkout_remote(repo.working_tree_dir, "origin/feature", "review")
        assert repo.active_branch.name == "review"

    def test_checkout_remote_name_taken(self, manager, repo):
        """Test that an existing local name is rejected."""
        manager.create(repo.working_tree_dir, "feature")
        with pytest.raises(BranchError):
            manager.checkout_remote(repo.working_tree_dir, "origin/feature")

    def test_checkout_remote_unknown(self, manager, repo):
        """Test unknown and malformed remote branch names."""
        with pytest.raises(BranchError):
            manager.checkout_remote(repo.working_tree_dir, "origin/nope")
        with pytest.raises(BranchError):
            manager.checkout_remote(repo.working_tree_dir, "feature")

    def test_checkout_remote_blocked_discards_branch(self, manager, repo):
        """A blocked switch leaves no half-created local branch behind."""
        (Path(repo.working_tree_dir) / "README.md").write_text("edited\n")

        result = manager.checkout_remote(repo.working_tree_dir, "origin/feature")

        assert not result.success
        assert result.has_uncommitted_changes
        assert "feature" not in [h.name for h in repo.heads]
        assert repo.active_branch.name == "main"

    def test_set_upstream(self, manager, repo):
        """Test configuring an upstream."""
        manager.create(repo.working_tree_dir, "topic")
        manager.set_upstream(repo.working_tree_dir, "topic", "origin/feature")
        assert repo.heads["topic"].tracking_branch().name == "origin/feature"

        with pytest.raises(BranchError):
            manager.set_upstream(repo.working_tree_dir, "topic", "origin/nope")

    def test_default_remote(self, manager, repo):
        """Test that the upstream remote is picked."""
        assert manager.default_remote(repo.working_tree_dir) == "origin"
