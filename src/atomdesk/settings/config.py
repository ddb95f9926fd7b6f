"""
AtomDesk sync configuration.

Settings are read from ``ATOMDESK_*`` environment variables (and a ``.env``
file), or loaded from a YAML/JSON file with :meth:`SyncSettings.from_file`.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REMOTE_PRIORITY = ["origin", "upstream", "github", "gitlab"]


class HostKeyPolicy(str, Enum):
    """
    Trust policy for SSH host keys.

    Maps onto OpenSSH's ``StrictHostKeyChecking`` option and is applied to
    both the embedded transport and the external tool.
    """

    STRICT = "strict"
    ACCEPT_NEW = "accept-new"
    ACCEPT_ALL = "accept-all"

    @property
    def ssh_option(self) -> str:
        return {
            HostKeyPolicy.STRICT: "yes",
            HostKeyPolicy.ACCEPT_NEW: "accept-new",
            HostKeyPolicy.ACCEPT_ALL: "no",
        }[self]


class SyncSettings(BaseSettings):
    """
    Configuration of the sync engine.

    Example:
        ```python
        settings = SyncSettings(host_key_policy="strict", external_timeout=60)

        # Load from file
        settings = SyncSettings.from_file("~/.atomdesk/config.yaml")
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="ATOMDESK_",
        env_file=".env",
        extra="ignore",
    )

    service_name: str = Field(
        default="AtomDesk",
        description="Service identifier used for secret-store keys",
    )
    data_dir: Path = Field(
        default=Path("~/.atomdesk"),
        description="Directory holding the token cache and secret file",
    )
    external_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Wall-clock limit for external git processes in seconds",
    )
    ssh_connect_timeout: int = Field(
        default=10,
        gt=0,
        description="SSH ConnectTimeout in seconds",
    )
    max_auth_attempts: int = Field(
        default=3,
        ge=1,
        le=3,
        description="Authentication attempts per operation",
    )
    host_key_policy: HostKeyPolicy = Field(
        default=HostKeyPolicy.ACCEPT_NEW,
        description="SSH host-key trust policy",
    )
    ssh_key_path: Optional[Path] = Field(
        default=None,
        description="Explicit private key tried before the conventional keys",
    )
    preferred_remotes: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REMOTE_PRIORITY),
        description="Remote names preferred when no upstream is configured",
    )
    git_executable: str = Field(
        default="git",
        description="External git executable name or path",
    )

    @field_validator("data_dir", "ssh_key_path")
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        """Expand ``~`` in configured paths."""
        return v.expanduser() if v is not None else None

    @property
    def token_cache_path(self) -> Path:
        return self.data_dir / "tokens.yaml"

    @property
    def secrets_path(self) -> Path:
        return self.data_dir / "secrets.yaml"

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SyncSettings":
        """
        Load settings from a YAML or JSON file.

        File format (YAML):
            ```yaml
            host_key_policy: strict
            external_timeout: 45
            ssh_key_path: ~/.ssh/work_ed25519
            preferred_remotes: [origin, upstream]
            ```

        Args:
            path: Path to the configuration file

        Returns:
            Loaded SyncSettings instance

        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        path = Path(path).expanduser().resolve()

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        content = path.read_text()

        if path.suffix == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)

        return cls(**(data or {}))
