"""
Storage Abstraction Layer - Content-Addressed Blob Store

Every blob is keyed by the sha256 of its bytes, so puts are idempotent and
the same image uploaded twice resolves to the same checksum.
LocalStorage persists to the filesystem; InMemoryStorage backs tests and
single-process deployments.
"""

import hashlib
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from pixelmill.core.config import settings
from pixelmill.core.exceptions import BlobNotFound, InvalidInput


def compute_checksum(data: bytes) -> str:
    """Content hash used as the blob key."""
    return hashlib.sha256(data).hexdigest()


def _validate_checksum(checksum: str) -> str:
    if len(checksum) != 64 or any(c not in "0123456789abcdef" for c in checksum):
        raise InvalidInput(f"Malformed checksum: {checksum!r}")
    return checksum


class IStorage(ABC):
    """Interface for blob storage - The Bridge"""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """
        Store bytes and return their checksum.

        Storing the same bytes twice is a no-op returning the same checksum.
        """

    @abstractmethod
    def get(self, checksum: str) -> bytes:
        """
        Fetch the bytes stored under a checksum.

        Raises:
            BlobNotFound: if nothing is stored under the checksum
        """

    @abstractmethod
    def exists(self, checksum: str) -> bool:
        """Check if a blob exists in storage."""

    @abstractmethod
    def delete(self, checksum: str) -> bool:
        """Delete a blob. Returns True if something was removed."""


class LocalStorage(IStorage):
    """Local filesystem storage, sharded by the first two hex digits."""

    def __init__(self, base_path: str = "./data/blobs"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, checksum: str) -> Path:
        checksum = _validate_checksum(checksum)
        return self.base_path / checksum[:2] / checksum

    def put(self, data: bytes) -> str:
        checksum = compute_checksum(data)
        file_path = self._path_for(checksum)
        if file_path.exists():
            return checksum

        file_path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file then rename so readers never see partial blobs
        fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, file_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return checksum

    def get(self, checksum: str) -> bytes:
        file_path = self._path_for(checksum)
        try:
            return file_path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(checksum)

    def exists(self, checksum: str) -> bool:
        return self._path_for(checksum).exists()

    def delete(self, checksum: str) -> bool:
        file_path = self._path_for(checksum)
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False


class InMemoryStorage(IStorage):
    """Process-local storage for tests and single-node runs."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        checksum = compute_checksum(data)
        with self._lock:
            self._blobs.setdefault(checksum, bytes(data))
        return checksum

    def get(self, checksum: str) -> bytes:
        with self._lock:
            data = self._blobs.get(checksum)
        if data is None:
            raise BlobNotFound(checksum)
        return data

    def exists(self, checksum: str) -> bool:
        with self._lock:
            return checksum in self._blobs

    def delete(self, checksum: str) -> bool:
        with self._lock:
            return self._blobs.pop(checksum, None) is not None


class StorageFactory:
    """
    Factory for creating storage instances.

    The backend is picked from STORAGE_BACKEND; callers only ever see IStorage.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the appropriate storage implementation based on settings."""
        if cls._instance is None:
            backend = settings.STORAGE_BACKEND.lower()
            if backend == "memory":
                cls._instance = InMemoryStorage()
            elif backend == "local":
                cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
            else:
                raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None


def get_storage() -> IStorage:
    """Get the storage instance."""
    return StorageFactory.get_storage()
