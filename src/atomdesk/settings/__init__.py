"""
Settings for AtomDesk sync.

Example:
    ```python
    from atomdesk.settings import SyncSettings, TokenCache, TokenRecord

    settings = SyncSettings()
    cache = TokenCache(settings.token_cache_path)
    cache.set("github.com", TokenRecord(domain="github.com", token="ghp_xxxx"))
    ```
"""

from atomdesk.settings.config import DEFAULT_REMOTE_PRIORITY, HostKeyPolicy, SyncSettings
from atomdesk.settings.secrets import (
    MemorySecretStore,
    SecretStore,
    YamlSecretStore,
    credential_key,
)
from atomdesk.settings.tokens import TokenCache, TokenRecord

__all__ = [
    # Configuration
    "SyncSettings",
    "DEFAULT_REMOTE_PRIORITY",
    "HostKeyPolicy",
    # Tokens
    "TokenCache",
    "TokenRecord",
    # Secrets
    "SecretStore",
    "MemorySecretStore",
    "YamlSecretStore",
    "credential_key",
]
