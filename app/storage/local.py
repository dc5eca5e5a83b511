from pathlib import Path
from typing import BinaryIO

from app.core.config import get_settings
from app.storage.base import StorageBackend


class LocalStorage(StorageBackend):
    scheme = "local"

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or get_settings().storage_local_path)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        path = (self.root / self.key_for(ref)).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFoundError(ref)
        return path

    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(body if isinstance(body, bytes) else body.read())
        return f"{self.scheme}://{key}"

    async def get(self, ref: str) -> bytes:
        path = self._path(ref)
        if not path.exists():
            raise FileNotFoundError(ref)
        return path.read_bytes()

    async def delete(self, ref: str) -> None:
        path = self._path(ref)
        if path.exists():
            path.unlink()
