"""
Access token cache.

Tokens are keyed by host/domain and shared by every operation in the
process. All reads and writes go through a single lock; the cache is
optionally persisted to a YAML file readable only by its owner.
"""

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import BaseModel, Field, SecretStr

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRecord(BaseModel):
    """
    A cached access token.

    Example:
        ```python
        record = TokenRecord(domain="github.com", token="ghp_xxxx", username="octocat")
        ```
    """

    domain: str = Field(description="Host the token is valid for")
    token: SecretStr = Field(description="Access token")
    username: Optional[str] = Field(default=None, description="Account name, if known")
    created_at: datetime = Field(default_factory=_utcnow)
    last_used: Optional[datetime] = Field(default=None)

    def get_token(self) -> str:
        """Get the token as a plain string."""
        return self.token.get_secret_value()

    def __repr__(self) -> str:
        return f"TokenRecord(domain={self.domain!r}, username={self.username!r}, token='***')"


class TokenCache:
    """
    Process-wide token cache keyed by domain.

    Example:
        ```python
        cache = TokenCache("~/.atomdesk/tokens.yaml")
        cache.set("github.com", TokenRecord(domain="github.com", token="ghp_xxxx"))
        record = cache.get("github.com")
        cache.touch("github.com")
        ```
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """
        Initialize the cache.

        Args:
            path: YAML file to persist to; memory only when None
        """
        self._path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._records: dict[str, TokenRecord] = {}
        self._loaded = self._path is None

    @staticmethod
    def _key(domain: str) -> str:
        return domain.strip().lower()

    def get(self, domain: str) -> Optional[TokenRecord]:
        """Return the record for a domain, if any."""
        with self._lock:
            self._ensure_loaded()
            return self._records.get(self._key(domain))

    def set(self, domain: str, record: TokenRecord) -> None:
        """Store or replace the record for a domain."""
        key = self._key(domain)
        with self._lock:
            self._ensure_loaded()
            self._records[key] = record.model_copy(update={"domain": key})
            self._save()

    def delete(self, domain: str) -> bool:
        """Remove the record for a domain. Returns True if one existed."""
        with self._lock:
            self._ensure_loaded()
            removed = self._records.pop(self._key(domain), None) is not None
            if removed:
                self._save()
            return removed

    def list_all(self) -> list[TokenRecord]:
        """All records, sorted by domain."""
        with self._lock:
            self._ensure_loaded()
            return [self._records[k] for k in sorted(self._records)]

    def touch(self, domain: str) -> Optional[TokenRecord]:
        """Set ``last_used`` to now. Returns the updated record."""
        key = self._key(domain)
        with self._lock:
            self._ensure_loaded()
            record = self._records.get(key)
            if record is None:
                return None
            record = record.model_copy(update={"last_used": _utcnow()})
            self._records[key] = record
            self._save()
            return record

    # Callers hold self._lock.

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        data = yaml.safe_load(self._path.read_text()) or {}
        for entry in data.get("tokens", []):
            record = TokenRecord(**entry)
            self._records[self._key(record.domain)] = record
        logger.debug("Loaded %d cached tokens from %s", len(self._records), self._path)

    def _save(self) -> None:
        if self._path is None:
            return
        entries = []
        for record in self._records.values():
            entry = record.model_dump(mode="json", exclude_none=True)
            entry["token"] = record.get_token()
            entries.append(entry)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.dump({"tokens": entries}, default_flow_style=False, sort_keys=False)

        # Write with restricted permissions (owner only)
        self._path.write_text(content)
        os.chmod(self._path, 0o600)

    def __len__(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return len(self._records)

    def __repr__(self) -> str:
        return f"TokenCache(path={str(self._path) if self._path else None!r})"
