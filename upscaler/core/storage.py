"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for artifact storage. Strategies need real file
paths (the enhance binary reads and writes files directly), so the interface
resolves storage keys to local paths.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from upscaler.core.config import settings
from upscaler.core.exceptions import InfrastructureError


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    def save(self, file_data: bytes, storage_key: str) -> str:
        """
        Write bytes under a storage key.

        Args:
            file_data: Raw bytes of the file
            storage_key: Relative key, e.g. "jobs/<id>/original.png"

        Returns:
            The storage key
        """
        pass

    @abstractmethod
    def reserve(self, storage_key: str) -> str:
        """Make a key writable without creating the file. Returns the key."""
        pass

    @abstractmethod
    def path_for(self, storage_key: str) -> Path:
        """Resolve a key to a local filesystem path."""
        pass

    @abstractmethod
    def size(self, storage_key: str) -> int:
        """Size in bytes, 0 when the artifact does not exist."""
        pass

    @abstractmethod
    def delete(self, storage_key: str) -> bool:
        pass

    def exists(self, storage_key: str) -> bool:
        """Check if a non-empty artifact exists in storage."""
        return self.size(storage_key) > 0


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise ValueError(f"Storage key escapes storage root: {storage_key}")
        return path

    def save(self, file_data: bytes, storage_key: str) -> str:
        path = self.path_for(storage_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(file_data)
        except OSError as e:
            raise InfrastructureError(f"Failed to write {storage_key}: {e}", component="storage")
        return storage_key

    def reserve(self, storage_key: str) -> str:
        path = self.path_for(storage_key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InfrastructureError(f"Failed to reserve {storage_key}: {e}", component="storage")
        return storage_key

    def size(self, storage_key: str) -> int:
        path = self.path_for(storage_key)
        return path.stat().st_size if path.is_file() else 0

    def delete(self, storage_key: str) -> bool:
        path = self.path_for(storage_key)
        if path.is_file():
            path.unlink()
            return True
        return False


class StorageFactory:
    """Factory for creating storage instances."""

    @staticmethod
    def create(base_path: Optional[str] = None) -> IStorage:
        return LocalStorage(base_path=base_path or settings.LOCAL_STORAGE_PATH)
