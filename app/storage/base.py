from abc import ABC, abstractmethod
from typing import BinaryIO

from app.core.config import get_settings


class StorageBackend(ABC):
    """Image store. References it returns are opaque to the rest of the app."""

    scheme: str = ""

    def key_for(self, ref: str) -> str:
        prefix = f"{self.scheme}://"
        return ref[len(prefix):] if ref.startswith(prefix) else ref

    @abstractmethod
    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        """Store file; return its reference."""
        ...

    @abstractmethod
    async def get(self, ref: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, ref: str) -> None:
        ...


def get_storage() -> StorageBackend:
    settings = get_settings()
    if settings.storage_backend == "gcs":
        from app.storage.gcs import GCSStorage
        return GCSStorage()
    from app.storage.local import LocalStorage
    return LocalStorage()
