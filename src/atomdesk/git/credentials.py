"""
Credential resolution.

Given a repository URL, the resolver decides which authentication mode the
URL needs and returns the ordered credential attempts for one operation.
An AttemptBudget caps how many of them a single operation may use.

Example:
    ```python
    resolver = CredentialResolver(token_cache=TokenCache())
    attempts = resolver.resolve("https://github.com/user/repo.git")
    budget = AttemptBudget()
    for credential in attempts:
        budget.consume("https://github.com/user/repo.git")
        ...
    ```
"""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import SecretStr, ValidationError

from atomdesk.git.auth import (
    AuthCredential,
    NoCredential,
    SshAgentCredential,
    SshKeyCredential,
    TokenCredential,
    UrlScheme,
    classify_url,
    dump_credential,
    extract_domain,
    extract_username,
    find_ssh_keys,
    load_credential,
    mask_credentials,
)
from atomdesk.git.exceptions import AuthenticationFailedError
from atomdesk.settings.config import SyncSettings
from atomdesk.settings.secrets import SecretStore, YamlSecretStore, credential_key
from atomdesk.settings.tokens import TokenCache

logger = logging.getLogger(__name__)

MAX_AUTH_ATTEMPTS = 3

# Username sent with a token when neither the cache nor the URL names one.
DEFAULT_TOKEN_USERNAME = "git"


class AttemptBudget:
    """Counts the authentication attempts of one operation."""

    def __init__(self, limit: int = MAX_AUTH_ATTEMPTS):
        self.limit = min(limit, MAX_AUTH_ATTEMPTS)
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self, url: str) -> int:
        """
        Take one attempt from the budget.

        Returns:
            The 1-based number of this attempt

        Raises:
            AuthenticationFailedError: If the budget is already used up
        """
        if self.exhausted:
            raise AuthenticationFailedError(
                f"Authentication failed for {mask_credentials(url)} after {self.used} attempt(s)"
            )
        self.used += 1
        return self.used


class CredentialResolver:
    """
    Produces ordered credential attempts for repository URLs.

    SSH URLs use an explicit key when configured, else the conventional keys
    found in ``~/.ssh`` (most modern algorithm first), then the SSH agent.
    HTTPS URLs use a secret stored for the exact URL, else the access token
    cached for the URL's host, else anonymous access.
    """

    def __init__(
        self,
        *,
        token_cache: Optional[TokenCache] = None,
        secret_store: Optional[SecretStore] = None,
        service_name: str = "AtomDesk",
        ssh_key_path: Optional[Path] = None,
        ssh_home: Optional[Path] = None,
        max_attempts: int = MAX_AUTH_ATTEMPTS,
    ):
        self.token_cache = token_cache
        self.secret_store = secret_store
        self.service_name = service_name
        self.ssh_key_path = ssh_key_path
        self.ssh_home = ssh_home
        self.max_attempts = min(max_attempts, MAX_AUTH_ATTEMPTS)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        token_cache: Optional[TokenCache] = None,
        secret_store: Optional[SecretStore] = None,
    ) -> "CredentialResolver":
        """Build a resolver; stores default to files under ``settings.data_dir``."""
        if token_cache is None:
            token_cache = TokenCache(settings.token_cache_path)
        if secret_store is None:
            secret_store = YamlSecretStore(settings.secrets_path)
        return cls(
            token_cache=token_cache,
            secret_store=secret_store,
            service_name=settings.service_name,
            ssh_key_path=settings.ssh_key_path,
            max_attempts=settings.max_auth_attempts,
        )

    def resolve(self, url: str, explicit: Optional[AuthCredential] = None) -> list[AuthCredential]:
        """
        Return the credential attempts for one operation against ``url``.

        Args:
            url: Repository URL
            explicit: Credential supplied by the caller; replaces lookup

        Returns:
            Ordered attempts, never more than the attempt cap
        """
        scheme = classify_url(url)

        if explicit is not None and not isinstance(explicit, NoCredential):
            if isinstance(explicit, TokenCredential) and explicit.username is None:
                attempts = self._token_attempts(explicit.token, extract_username(url))
            else:
                attempts = [explicit]
        elif scheme == UrlScheme.SSH:
            attempts = self._ssh_attempts()
        elif scheme == UrlScheme.HTTPS:
            attempts = self._https_attempts(url)
        else:
            attempts = [NoCredential()]

        attempts = attempts[: self.max_attempts]
        logger.debug(
            "Resolved %d credential attempt(s) for %s: %s",
            len(attempts),
            mask_credentials(url),
            ", ".join(a.describe() for a in attempts),
        )
        return attempts

    def _ssh_attempts(self) -> list[AuthCredential]:
        if self.ssh_key_path is not None:
            return [SshKeyCredential(path=self.ssh_key_path)]
        attempts: list[AuthCredential] = [SshKeyCredential(path=p) for p in find_ssh_keys(self.ssh_home)]
        attempts.append(SshAgentCredential())
        return attempts

    def _https_attempts(self, url: str) -> list[AuthCredential]:
        stored = self.load_stored(url)
        if stored is not None:
            return [stored]

        domain = extract_domain(url)
        if domain and self.token_cache is not None:
            record = self.token_cache.get(domain)
            if record is not None:
                return self._token_attempts(record.token, record.username or extract_username(url))

        return [NoCredential()]

    @staticmethod
    def _token_attempts(token: SecretStr, username: Optional[str]) -> list[AuthCredential]:
        # Token as username first, then as the password of a named user.
        return [
            TokenCredential(token=token),
            TokenCredential(token=token, username=username or DEFAULT_TOKEN_USERNAME),
        ]

    # =========================================================================
    # Stored secrets
    # =========================================================================

    def load_stored(self, url: str) -> Optional[AuthCredential]:
        """Return the credential stored for exactly this URL, if any."""
        if self.secret_store is None:
            return None
        blob = self.secret_store.load(credential_key(self.service_name, url))
        if blob is None:
            return None
        try:
            return load_credential(blob)
        except ValidationError:
            logger.warning("Ignoring unreadable stored credential for %s", mask_credentials(url))
            return None

    def store(self, url: str, credential: AuthCredential) -> None:
        """Persist a credential for exactly this URL."""
        if self.secret_store is None:
            raise ValueError("No secret store configured")
        self.secret_store.store(credential_key(self.service_name, url), dump_credential(credential))

    def forget(self, url: str) -> None:
        """Delete the credential stored for this URL."""
        if self.secret_store is not None:
            self.secret_store.delete(credential_key(self.service_name, url))

    # =========================================================================
    # Usage tracking
    # =========================================================================

    def record_success(self, url: str, credential: AuthCredential) -> None:
        """
        Note that ``credential`` authenticated against ``url``.

        Successful token use refreshes the cached record's ``last_used``.
        Failures to update are logged and never propagate.
        """
        if not isinstance(credential, TokenCredential) or self.token_cache is None:
            return
        domain = extract_domain(url)
        if not domain:
            return
        try:
            self.token_cache.touch(domain)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Could not update last-used time of token for %s: %s", domain, e)
