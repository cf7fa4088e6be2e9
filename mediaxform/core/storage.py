"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for blob operations with LocalStorage (active).
Keys are hierarchical strings: {domain}/{owner_id}/{name}.{ext}
"""

import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from mediaxform.core.config import settings
from mediaxform.core.exceptions import NotFoundError, TransientIOError
from mediaxform.core.logging import get_logger

logger = get_logger(__name__)


def extension_for_mime(mime_type: str) -> str:
    """image/jpeg -> jpeg"""
    return mime_type.split("/", 1)[-1].lower()


def build_original_key(owner_id: str, mime_type: str, domain: Optional[str] = None) -> str:
    """Blob key for an uploaded original, unique by high-resolution timestamp."""
    domain = domain or settings.STORAGE_DOMAIN
    return f"{domain}/{owner_id}/{time.time_ns()}.{extension_for_mime(mime_type)}"


def build_derived_key(
    owner_id: str,
    fingerprint: str,
    fmt: str,
    domain: Optional[str] = None
) -> str:
    """
    Blob key for a derived object.

    Deterministic in (owner, fingerprint, format) so a redelivered transform
    overwrites the same blob instead of leaving an orphan behind.
    """
    domain = domain or settings.STORAGE_DOMAIN
    return f"{domain}/{owner_id}/{fingerprint}-transformed.{fmt}"


class IStorage(ABC):
    """Interface for blob operations - The Bridge"""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Store bytes under key and return a locator for them.

        Args:
            key: Hierarchical blob key
            data: Raw bytes of the file
            content_type: MIME type of the file

        Returns:
            Locator (URL or path) for the stored blob
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """
        Read the bytes stored under key.

        Raises:
            NotFoundError: if nothing is stored under key
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete a blob.

        Returns:
            True if deleted, False if it did not exist
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a blob exists."""


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise NotFoundError(f"Invalid storage key: {key}")
        return path

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        file_path = self._path(key)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling then rename so readers never see a partial blob
            tmp_path = file_path.with_name(file_path.name + ".part")
            with open(tmp_path, "wb") as f:
                f.write(data)
            tmp_path.replace(file_path)
        except OSError as e:
            raise TransientIOError(f"Blob write failed: {e}", service="storage")

        logger.debug("blob_stored", key=key, size=len(data), content_type=content_type)
        return f"/static/storage/{key}"

    async def get(self, key: str) -> bytes:
        file_path = self._path(key)
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFoundError(f"Blob not found: {key}")
        except OSError as e:
            raise TransientIOError(f"Blob read failed: {e}", service="storage")

    async def delete(self, key: str) -> bool:
        file_path = self._path(key)
        try:
            file_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise TransientIOError(f"Blob delete failed: {e}", service="storage")

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()


class StorageFactory:
    """
    Factory for creating storage instances.

    Only the local filesystem backend ships today; a cloud backend plugs in
    here behind the same IStorage interface.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the storage implementation for this process."""
        if cls._instance is None:
            cls._instance = LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
        return cls._instance
