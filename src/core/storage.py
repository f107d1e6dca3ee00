"""
Storage Abstraction Layer - The Bridge Pattern

Blob storage for original uploads and transformed outputs. The core only
relies on read/write-by-key; every write lands under a fresh unique key so an
existing blob is never overwritten.
"""

import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from datetime import datetime

from src.core.exceptions import StorageError, NotFoundError


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads"
    ) -> str:
        """
        Store bytes under a new unique key.

        Args:
            file_data: Raw bytes of the file
            filename: Name used only for its extension
            folder: Subfolder/container prefix

        Returns:
            Storage key usable with read(), exists() and delete()
        """

    @abstractmethod
    def read(self, storage_key: str) -> bytes:
        """Return the bytes stored under a key. Raises NotFoundError if absent."""

    @abstractmethod
    def delete(self, storage_key: str) -> bool:
        """Delete a blob. Returns False when there was nothing to delete."""

    @abstractmethod
    def exists(self, storage_key: str) -> bool:
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_unique_filename(self, filename: str) -> str:
        """Generate a unique filename with timestamp and UUID."""
        ext = Path(filename).suffix
        unique_id = uuid.uuid4().hex[:12]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{timestamp}_{unique_id}{ext}"

    def _resolve(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Storage key escapes storage root: {storage_key}")
        return path

    def upload(
        self,
        file_data: bytes,
        filename: str,
        folder: str = "uploads"
    ) -> str:
        folder_path = self.base_path / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        unique_filename = self._get_unique_filename(filename)
        try:
            with open(folder_path / unique_filename, "wb") as f:
                f.write(file_data)
        except OSError as e:
            raise StorageError(f"Failed to write {folder}/{unique_filename}: {e}")

        return f"{folder}/{unique_filename}"

    def read(self, storage_key: str) -> bytes:
        path = self._resolve(storage_key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {storage_key}")
        except OSError as e:
            raise StorageError(f"Failed to read {storage_key}: {e}")

    def delete(self, storage_key: str) -> bool:
        path = self._resolve(storage_key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete {storage_key}: {e}")
        return True

    def exists(self, storage_key: str) -> bool:
        return self._resolve(storage_key).is_file()
