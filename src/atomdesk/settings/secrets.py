"""
Secret store contract.

The sync engine only needs ``store``/``load``/``delete`` on opaque blobs.
Keys combine a service identifier with the full repository URL.
"""

import os
import threading
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

import yaml


def credential_key(service: str, url: str) -> str:
    """Secret-store key for the credential of one repository URL."""
    return f"{service}/git:{url}"


@runtime_checkable
class SecretStore(Protocol):
    """Read/write contract of a persistent secret store."""

    def store(self, key: str, blob: str) -> None: ...

    def load(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...


class MemorySecretStore:
    """Secret store kept in process memory."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def store(self, key: str, blob: str) -> None:
        with self._lock:
            self._data[key] = blob

    def load(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class YamlSecretStore:
    """
    Secret store backed by an owner-only YAML file.

    WARNING: blobs are written in clear text. Prefer an OS keychain-backed
    implementation of :class:`SecretStore` where one is available.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        return yaml.safe_load(self._path.read_text()) or {}

    def _write(self, data: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(yaml.dump(data, default_flow_style=False))
        os.chmod(self._path, 0o600)

    def store(self, key: str, blob: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = blob
            self._write(data)

    def load(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)
