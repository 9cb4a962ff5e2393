"""
Durable key-value cache used to restore the signed-in identity across restarts.

The cache is a single JSON document, encrypted with Fernet, stored in one
file. Every write replaces the whole file atomically, so a crash mid-write
leaves either the old or the new document on disk. An unreadable file is
treated as an empty cache and is overwritten by the next write.

Several browser sessions share the file; each keeps its entries under its own
slot (see `slot_key`).
"""
# nutriu/cache.py

import json
import logging
import os
import tempfile
import threading
from typing import Dict, Optional

from cryptography.fernet import InvalidToken

logger = logging.getLogger("nutriu.cache")

# Keys of the slots holding the serialized identity and the session tokens.
IDENTITY_KEY = "nutriu.user"
SESSION_KEY = "nutriu.session"


def slot_key(key: str, slot: Optional[str] = None) -> str:
    """Returns `key` scoped to one browser (`slot`), or `key` itself when no slot is given."""
    return f"{key}:{slot}" if slot else key


class LocalCache:
    """Encrypted, file-backed key-value store of string values."""

    def __init__(self, path: str, encryptor):
        """
        Args:
            path (str): File holding the encrypted JSON document.
            encryptor: Object with `encrypt(bytes)` / `decrypt(bytes)`, e.g. a Fernet instance.
        """
        self._path = path
        self._encryptor = encryptor
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> Dict[str, str]:
        try:
            with open(self._path, "rb") as f:
                encrypted = f.read()
        except FileNotFoundError:
            return {}
        if not encrypted:
            return {}
        try:
            data = json.loads(self._encryptor.decrypt(encrypted).decode("utf-8"))
        except (InvalidToken, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Discarding unreadable cache file %s (%s)", self._path, type(e).__name__)
            return {}
        if not isinstance(data, dict):
            logger.warning("Discarding cache file %s: unexpected document type", self._path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: Dict[str, str]) -> None:
        payload = self._encryptor.encrypt(json.dumps(data).encode("utf-8"))
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".nutriu-cache-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)
