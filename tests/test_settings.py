"""Tests for settings, token cache and secret stores."""

import json
import os
import stat
import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from atomdesk.settings import (
    HostKeyPolicy,
    MemorySecretStore,
    SecretStore,
    SyncSettings,
    TokenCache,
    TokenRecord,
    YamlSecretStore,
)


class TestTokenRecord:
    """Tests for TokenRecord model."""

    def test_token_hidden(self):
        """Test that the token does not appear in repr."""
        record = TokenRecord(domain="github.com", token="ghp_secret", username="octocat")
        assert record.get_token() == "ghp_secret"
        assert "ghp_secret" not in repr(record)
        assert record.last_used is None
        assert record.created_at.tzinfo is not None


class TestTokenCache:
    """Tests for TokenCache."""

    def test_set_and_get(self):
        """Test storing and retrieving by normalized domain."""
        cache = TokenCache()
        cache.set("GitHub.com ", TokenRecord(domain="GitHub.com", token="ghp_a"))

        record = cache.get("github.com")
        assert record is not None
        assert record.domain == "github.com"
        assert record.get_token() == "ghp_a"
        assert len(cache) == 1

    def test_delete(self):
        """Test removing a record."""
        cache = TokenCache()
        cache.set("github.com", TokenRecord(domain="github.com", token="ghp_a"))
        assert cache.delete("github.com")
        assert not cache.delete("github.com")
        assert cache.get("github.com") is None

    def test_list_all_sorted(self):
        """Test that records are listed by domain."""
        cache = TokenCache()
        cache.set("gitlab.com", TokenRecord(domain="gitlab.com", token="b"))
        cache.set("bitbucket.org", TokenRecord(domain="bitbucket.org", token="a"))
        assert [r.domain for r in cache.list_all()] == ["bitbucket.org", "gitlab.com"]

    def test_touch(self):
        """Test updating last_used."""
        cache = TokenCache()
        assert cache.touch("github.com") is None

        cache.set("github.com", TokenRecord(domain="github.com", token="ghp_a"))
        record = cache.touch("github.com")
        assert record.last_used is not None
        assert cache.get("github.com").last_used == record.last_used

    def test_persistence(self):
        """Test that records survive a reload and the file is owner-only."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "tokens.yaml"
            cache = TokenCache(path)
            cache.set("github.com", TokenRecord(domain="github.com", token="ghp_a", username="octocat"))
            cache.touch("github.com")

            mode = stat.S_IMODE(os.stat(path).st_mode)
            assert mode == 0o600

            data = yaml.safe_load(path.read_text())
            assert data["tokens"][0]["token"] == "ghp_a"

            reloaded = TokenCache(path)
            record = reloaded.get("github.com")
            assert record.get_token() == "ghp_a"
            assert record.username == "octocat"
            assert record.last_used is not None


class TestSecretStores:
    """Tests for the secret store implementations."""

    def test_memory_store(self):
        """Test store/load/delete in memory."""
        store = MemorySecretStore({"a": "1"})
        assert isinstance(store, SecretStore)
        assert store.load("a") == "1"
        store.store("b", "2")
        store.delete("a")
        store.delete("missing")
        assert store.load("a") is None
        assert store.load("b") == "2"

    def test_yaml_store(self):
        """Test that the YAML store persists blobs owner-only."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "secrets.yaml"
            store = YamlSecretStore(path)
            assert isinstance(store, SecretStore)
            assert store.load("AtomDesk/git:https://h/r.git") is None

            store.store("AtomDesk/git:https://h/r.git", '{"kind": "none"}')
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
            assert YamlSecretStore(path).load("AtomDesk/git:https://h/r.git") == '{"kind": "none"}'

            store.delete("AtomDesk/git:https://h/r.git")
            assert store.load("AtomDesk/git:https://h/r.git") is None


class TestSyncSettings:
    """Tests for SyncSettings."""

    def test_defaults(self):
        """Test default values."""
        settings = SyncSettings()
        assert settings.service_name == "AtomDesk"
        assert settings.external_timeout == 30.0
        assert settings.ssh_connect_timeout == 10
        assert settings.max_auth_attempts == 3
        assert settings.host_key_policy == HostKeyPolicy.ACCEPT_NEW
        assert settings.preferred_remotes[:2] == ["origin", "upstream"]
        assert settings.token_cache_path.name == "tokens.yaml"
        assert "~" not in str(settings.data_dir)

    def test_attempts_validated(self):
        """Test that more than three attempts are rejected."""
        with pytest.raises(ValidationError):
            SyncSettings(max_auth_attempts=4)
        with pytest.raises(ValidationError):
            SyncSettings(max_auth_attempts=0)

    def test_env_override(self, monkeypatch):
        """Test ATOMDESK_ environment variables."""
        monkeypatch.setenv("ATOMDESK_HOST_KEY_POLICY", "strict")
        monkeypatch.setenv("ATOMDESK_EXTERNAL_TIMEOUT", "45")
        settings = SyncSettings()
        assert settings.host_key_policy == HostKeyPolicy.STRICT
        assert settings.external_timeout == 45.0

    def test_host_key_policy_options(self):
        """Test the OpenSSH option of each policy."""
        assert HostKeyPolicy.STRICT.ssh_option == "yes"
        assert HostKeyPolicy.ACCEPT_NEW.ssh_option == "accept-new"
        assert HostKeyPolicy.ACCEPT_ALL.ssh_option == "no"

    def test_from_yaml_file(self):
        """Test loading settings from YAML."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(
                {
                    "host_key_policy": "accept-all",
                    "ssh_key_path": "~/.ssh/work",
                    "preferred_remotes": ["upstream"],
                },
                f,
            )
            f.flush()

            try:
                settings = SyncSettings.from_file(f.name)
                assert settings.host_key_policy == HostKeyPolicy.ACCEPT_ALL
                assert settings.ssh_key_path == Path.home() / ".ssh" / "work"
                assert settings.preferred_remotes == ["upstream"]
            finally:
                os.unlink(f.name)

    def test_from_json_file(self):
        """Test loading settings from JSON."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump({"git_executable": "/usr/local/bin/git", "ssh_connect_timeout": 5}, f)
            f.flush()

            try:
                settings = SyncSettings.from_file(f.name)
                assert settings.git_executable == "/usr/local/bin/git"
                assert settings.ssh_connect_timeout == 5
            finally:
                os.unlink(f.name)

    def test_file_not_found(self):
        """Test loading a missing file."""
        with pytest.raises(FileNotFoundError):
            SyncSettings.from_file("/nonexistent/config.yaml")
