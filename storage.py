"""
Durable object storage: local filesystem for development, Supabase Storage in production.

Both backends expose the same three coroutines: put, get and signed_url.
Any failure is raised as StorageError.
"""
import os
import hmac
import time
import hashlib
import logging
from pathlib import Path
from urllib.parse import quote, urlencode

import httpx

from errors import StorageError

logger = logging.getLogger(__name__)


class LocalObjectStorage:
    def __init__(self, root: str, public_base_url: str = "", signing_secret: str = "dev-signing-secret"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret.encode()

    def _path(self, bucket: str, key: str) -> Path:
        parts = Path(key).parts
        if not key or ".." in parts or Path(key).is_absolute():
            raise StorageError(f"Invalid object key: {key!r}")
        return self.root / bucket / key

    async def put(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"write {bucket}/{key} failed: {e}") from e
        return f"{bucket}/{key}"

    async def get(self, bucket: str, key: str) -> bytes:
        try:
            return self._path(bucket, key).read_bytes()
        except OSError as e:
            raise StorageError(f"read {bucket}/{key} failed: {e}") from e

    def _signature(self, bucket: str, key: str, expires: int) -> str:
        msg = f"{bucket}/{key}:{expires}".encode()
        return hmac.new(self.signing_secret, msg, hashlib.sha256).hexdigest()

    async def signed_url(self, bucket: str, key: str, ttl_seconds: int) -> str:
        if not self._path(bucket, key).exists():
            raise StorageError(f"{bucket}/{key} not found")
        expires = int(time.time()) + ttl_seconds
        query = urlencode({"expires": expires, "sig": self._signature(bucket, key, expires)})
        return f"{self.public_base_url}/files/{bucket}/{quote(key)}?{query}"

    def verify(self, bucket: str, key: str, expires: int, sig: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(bucket, key, expires), sig or "")


class SupabaseStorage:
    """Supabase Storage REST API (service-role key)."""

    def __init__(self, url: str, service_key: str, timeout: float = 30.0):
        self.base = f"{url.rstrip('/')}/storage/v1"
        self.headers = {"Authorization": f"Bearer {service_key}", "apikey": service_key}
        self.timeout = timeout

    async def put(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        headers = {**self.headers, "Content-Type": content_type, "x-upsert": "true"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base}/object/{bucket}/{key}", content=data, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"upload {bucket}/{key} failed: {e}") from e
        return f"{bucket}/{key}"

    async def get(self, bucket: str, key: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base}/object/{bucket}/{key}", headers=self.headers)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            raise StorageError(f"download {bucket}/{key} failed: {e}") from e

    async def signed_url(self, bucket: str, key: str, ttl_seconds: int) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base}/object/sign/{bucket}/{key}",
                    json={"expiresIn": ttl_seconds},
                    headers=self.headers,
                )
                resp.raise_for_status()
                signed = resp.json().get("signedURL") or resp.json().get("signedUrl")
        except (httpx.HTTPError, ValueError) as e:
            raise StorageError(f"sign {bucket}/{key} failed: {e}") from e
        if not signed:
            raise StorageError(f"sign {bucket}/{key} returned no url")
        return f"{self.base}{signed}" if signed.startswith("/") else signed


def build_storage(settings):
    if settings.storage_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ValueError("STORAGE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseStorage(settings.supabase_url, settings.supabase_service_key, settings.http_timeout)
    logger.info("using local object storage at %s", settings.storage_dir)
    return LocalObjectStorage(settings.storage_dir, settings.public_backend_url, settings.signing_secret)
