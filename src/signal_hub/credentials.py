import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from src.signal_hub.errors import PersistenceError


class CredentialStore(ABC):
    """Key/value secret storage. Keys follow `{provider}[_{instance}]_{name}`."""

    @abstractmethod
    def get_secret(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set_secret(self, key: str, value: str):
        pass

    @abstractmethod
    def delete_secret(self, key: str):
        pass


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.secrets: Dict[str, str] = dict(initial or {})

    def get_secret(self, key: str) -> Optional[str]:
        return self.secrets.get(key)

    def set_secret(self, key: str, value: str):
        self.secrets[key] = value

    def delete_secret(self, key: str):
        self.secrets.pop(key, None)


class FileCredentialStore(CredentialStore):
    """
    JSON file store, written with owner-only permissions (0600). The whole
    file is rewritten on every change; writes go through a temp file.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._cache: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read credential file {self.path}: {e}") from e
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(self._cache, f, indent=2, sort_keys=True)
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)

    def _commit(self, key: str, previous: Optional[str]):
        try:
            self._flush()
        except OSError as e:
            if previous is None:
                self._cache.pop(key, None)
            else:
                self._cache[key] = previous
            raise PersistenceError(f"Cannot write credential file {self.path}: {e}") from e

    def get_secret(self, key: str) -> Optional[str]:
        return self._cache.get(key)

    def set_secret(self, key: str, value: str):
        with self._lock:
            previous = self._cache.get(key)
            self._cache[key] = value
            self._commit(key, previous)

    def delete_secret(self, key: str):
        with self._lock:
            previous = self._cache.pop(key, None)
            if previous is not None:
                self._commit(key, previous)
