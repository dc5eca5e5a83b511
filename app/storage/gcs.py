from typing import BinaryIO

from google.cloud import storage

from app.core.config import get_settings
from app.storage.base import StorageBackend


class GCSStorage(StorageBackend):
    scheme = "gs"

    def __init__(self) -> None:
        self.bucket_name = get_settings().gcs_bucket_name or "styleledger-images"
        self._client = storage.Client()
        self._bucket = self._client.bucket(self.bucket_name)

    def key_for(self, ref: str) -> str:
        key = super().key_for(ref)
        bucket_prefix = f"{self.bucket_name}/"
        return key[len(bucket_prefix):] if key.startswith(bucket_prefix) else key

    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        blob = self._bucket.blob(key)
        content_type = content_type or "application/octet-stream"
        if isinstance(body, bytes):
            blob.upload_from_string(body, content_type=content_type)
        else:
            blob.upload_from_file(body, content_type=content_type)
        return f"gs://{self.bucket_name}/{key}"

    async def get(self, ref: str) -> bytes:
        blob = self._bucket.blob(self.key_for(ref))
        if not blob.exists():
            raise FileNotFoundError(ref)
        return blob.download_as_bytes()

    async def delete(self, ref: str) -> None:
        blob = self._bucket.blob(self.key_for(ref))
        if blob.exists():
            blob.delete()
