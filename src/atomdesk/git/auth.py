"""
Git authentication utilities.

This module classifies repository URLs, defines the credential variants a
single authentication attempt can carry, discovers SSH keys, builds the SSH
command used for host-key trust, and masks credentials for safe logging.
"""

import json
import re
import shlex
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, Field, SecretStr, TypeAdapter

from atomdesk.settings.config import HostKeyPolicy

# user@host:path, the scp-like form that urlparse does not understand
_SCP_LIKE = re.compile(r"^(?P<user>[^@/\s]+)@(?P<host>[^:/\s]+):(?P<path>.*)$")

# Most modern algorithm first.
DEFAULT_SSH_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa", "id_dsa")


class UrlScheme(str, Enum):
    """Transport family of a repository URL."""

    SSH = "ssh"
    HTTPS = "https"
    LOCAL = "local"
    UNKNOWN = "unknown"


class AuthType(str, Enum):
    """Authentication mode a URL requires."""

    SSH = "ssh"
    TOKEN = "token"
    NONE = "none"


# =============================================================================
# Credential variants
# =============================================================================


class NoCredential(BaseModel):
    """Anonymous access."""

    kind: Literal["none"] = "none"

    def describe(self) -> str:
        return "anonymous"


class PasswordCredential(BaseModel):
    """Username and password."""

    kind: Literal["password"] = "password"
    username: str
    password: SecretStr

    def describe(self) -> str:
        return f"password for {self.username}"


class TokenCredential(BaseModel):
    """
    Access token.

    Without a username the token itself is sent as the username with an empty
    password; with a username the token is sent as the password.
    """

    kind: Literal["token"] = "token"
    token: SecretStr
    username: Optional[str] = None

    def basic_auth(self) -> tuple[str, str]:
        """Return the (username, password) pair sent over HTTP."""
        if self.username:
            return self.username, self.token.get_secret_value()
        return self.token.get_secret_value(), ""

    def describe(self) -> str:
        if self.username:
            return f"token as password for {self.username}"
        return "token as username"


class SshKeyCredential(BaseModel):
    """Private key file."""

    kind: Literal["ssh_key"] = "ssh_key"
    path: Path
    passphrase: Optional[SecretStr] = None

    def describe(self) -> str:
        return f"ssh key {self.path}"


class SshAgentCredential(BaseModel):
    """Keys offered by a running SSH agent."""

    kind: Literal["ssh_agent"] = "ssh_agent"

    def describe(self) -> str:
        return "ssh agent"


AuthCredential = Annotated[
    Union[
        NoCredential,
        PasswordCredential,
        TokenCredential,
        SshKeyCredential,
        SshAgentCredential,
    ],
    Field(discriminator="kind"),
]

_credential_adapter: TypeAdapter = TypeAdapter(AuthCredential)


def dump_credential(credential: AuthCredential) -> str:
    """
    Serialize a credential to a JSON blob for the secret store.

    Secret values are written in clear text; the blob must only be handed
    to a secret store.
    """
    data = {}
    for name, value in credential:
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        elif isinstance(value, Path):
            value = str(value)
        data[name] = value
    return json.dumps(data)


def load_credential(blob: Union[str, bytes]) -> AuthCredential:
    """Parse a blob written by :func:`dump_credential`."""
    return _credential_adapter.validate_json(blob)


# =============================================================================
# URL inspection
# =============================================================================


def classify_url(url: str) -> UrlScheme:
    """
    Classify the transport family of a repository URL.

    Example:
        ```python
        classify_url("git@github.com:user/repo.git")   # UrlScheme.SSH
        classify_url("https://github.com/user/repo")   # UrlScheme.HTTPS
        classify_url("file:///srv/git/repo.git")       # UrlScheme.LOCAL
        ```
    """
    url = url.strip()
    lowered = url.lower()
    if lowered.startswith("ssh://") or _SCP_LIKE.match(url):
        return UrlScheme.SSH
    if lowered.startswith(("http://", "https://")):
        return UrlScheme.HTTPS
    if lowered.startswith("file://"):
        return UrlScheme.LOCAL
    return UrlScheme.UNKNOWN


def detect_auth_type(url: str) -> AuthType:
    """Return the authentication mode a URL requires."""
    scheme = classify_url(url)
    if scheme == UrlScheme.SSH:
        return AuthType.SSH
    if scheme == UrlScheme.HTTPS:
        return AuthType.TOKEN
    return AuthType.NONE


def extract_domain(url: str) -> Optional[str]:
    """
    Extract the host of a repository URL.

    Standard URLs are parsed with urllib; ``user@host:path`` strings are
    split by hand.
    """
    url = url.strip()
    if "://" in url:
        hostname = urlparse(url).hostname
        if hostname:
            return hostname.lower()
    match = _SCP_LIKE.match(url)
    if match:
        return match.group("host").lower()
    return None


def extract_username(url: str) -> Optional[str]:
    """Extract the user part of a repository URL, if any."""
    url = url.strip()
    if "://" in url:
        return urlparse(url).username or None
    match = _SCP_LIKE.match(url)
    if match:
        return match.group("user")
    return None


def strip_credentials(url: str) -> str:
    """
    Remove credentials from a Git URL.

    Example:
        ```python
        clean = strip_credentials("https://token@github.com/user/repo.git")
        # Result: https://github.com/user/repo.git
        ```
    """
    parsed = urlparse(url)

    if not parsed.username:
        return url

    if parsed.port:
        netloc = f"{parsed.hostname}:{parsed.port}"
    else:
        netloc = parsed.hostname or ""

    return urlunparse((
        parsed.scheme,
        netloc,
        parsed.path,
        parsed.params,
        parsed.query,
        parsed.fragment,
    ))


def mask_credentials(url: str) -> str:
    """
    Mask credentials in a Git URL for safe logging.

    Only HTTP(S) userinfo is masked; the user of an SSH URL is not a secret.

    Example:
        ```python
        masked = mask_credentials("https://token@github.com/user/repo.git")
        # Result: https://***@github.com/user/repo.git
        ```
    """
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https") or not parsed.username:
        return url

    if parsed.port:
        netloc = f"***@{parsed.hostname}:{parsed.port}"
    else:
        netloc = f"***@{parsed.hostname}"

    return urlunparse((
        parsed.scheme,
        netloc,
        parsed.path,
        parsed.params,
        parsed.query,
        parsed.fragment,
    ))


# =============================================================================
# SSH keys
# =============================================================================


def default_ssh_key_paths(home: Optional[Path] = None) -> list[Path]:
    """Conventional private key locations in priority order."""
    ssh_dir = (home or Path.home()) / ".ssh"
    return [ssh_dir / name for name in DEFAULT_SSH_KEY_NAMES]


def find_ssh_keys(home: Optional[Path] = None) -> list[Path]:
    """Return the conventional private keys that exist, in priority order."""
    return [path for path in default_ssh_key_paths(home) if path.is_file()]


def validate_ssh_key(path: Union[str, Path]) -> bool:
    """Check that a file looks like a PEM or OpenSSH private key."""
    path = Path(path).expanduser()
    try:
        content = path.read_text(errors="replace")
    except OSError:
        return False
    return "-----BEGIN" in content and "PRIVATE KEY" in content


def public_key_path(path: Union[str, Path]) -> Path:
    """Path of the public half of a private key."""
    path = Path(path).expanduser()
    return path.with_name(path.name + ".pub")


def build_ssh_command(
    key_path: Optional[Path] = None,
    *,
    policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW,
    connect_timeout: int = 10,
) -> str:
    """
    Build the SSH command injected as ``GIT_SSH_COMMAND``.

    The command never prompts: batch mode is on and host-key handling is
    fixed by ``policy``.

    Example:
        ```python
        build_ssh_command(Path("~/.ssh/id_ed25519"))
        # ssh -i /home/me/.ssh/id_ed25519 -o IdentitiesOnly=yes
        #     -o StrictHostKeyChecking=accept-new -o ConnectTimeout=10 -o BatchMode=yes
        ```
    """
    parts = ["ssh"]
    if key_path is not None:
        parts += ["-i", str(Path(key_path).expanduser()), "-o", "IdentitiesOnly=yes"]
    parts += [
        "-o", f"StrictHostKeyChecking={policy.ssh_option}",
        "-o", f"ConnectTimeout={connect_timeout}",
        "-o", "BatchMode=yes",
    ]
    return shlex.join(parts)
