"""
Artifact storage backends.
"""

import asyncio
import hashlib
import hmac
import time
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx

from api.config.logging import get_logger
from api.config.settings import Settings, StorageBackend
from api.v1.infra.jobs.errors import CollaboratorError, parse_retry_after

logger = get_logger(__name__)


class ArtifactStorage(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> None: ...

    async def create_signed_url(self, path: str, ttl_s: int) -> str: ...


def _clean_path(path: str) -> str:
    parts = [part for part in path.strip("/").split("/") if part]
    if not parts or any(part in (".", "..") for part in parts):
        raise ValueError(f"Invalid artifact path: {path!r}")
    return "/".join(parts)


class LocalStorage:
    """Filesystem storage for development and tests."""

    def __init__(self, root: str | Path, secret: str = "local-dev"):
        self.root = Path(root)
        self._secret = secret.encode()

    def resolve(self, path: str) -> Path:
        return self.root / _clean_path(path)

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        # Overwrites, matching upsert semantics
        target.write_bytes(data)

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        target = self.resolve(path)
        await asyncio.to_thread(self._write, target, data)
        logger.info("storage.uploaded", path=path, size=len(data), backend="local")

    async def create_signed_url(self, path: str, ttl_s: int) -> str:
        target = self.resolve(path)
        if not target.exists():
            raise FileNotFoundError(path)
        expires = int(time.time()) + ttl_s
        signature = hmac.new(
            self._secret, f"{path}:{expires}".encode(), hashlib.sha256
        ).hexdigest()
        return f"{target.resolve().as_uri()}?expires={expires}&token={signature}"


class SupabaseStorage:
    """Supabase Storage REST API backend."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout_s = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/storage/v1",
            timeout=self.timeout_s,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.service_key}",
                "apikey": self.service_key,
            },
        )

    def _raise_for(self, response: httpx.Response, action: str) -> None:
        if response.status_code < 400:
            return
        raise CollaboratorError(
            f"Storage {action} failed ({response.status_code}): {response.text[:200]}",
            code=f"{action}_failed",
            status_code=response.status_code,
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        object_path = quote(_clean_path(path))
        async with self._client() as client:
            response = await client.post(
                f"/object/{self.bucket}/{object_path}",
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "true"},
            )
        self._raise_for(response, "upload")
        logger.info("storage.uploaded", path=path, size=len(data), backend="supabase")

    async def create_signed_url(self, path: str, ttl_s: int) -> str:
        object_path = quote(_clean_path(path))
        async with self._client() as client:
            response = await client.post(
                f"/object/sign/{self.bucket}/{object_path}",
                json={"expiresIn": ttl_s},
            )
        self._raise_for(response, "sign")
        signed = response.json().get("signedURL") or response.json().get("signedUrl")
        if not signed:
            raise CollaboratorError("Storage returned no signed URL", code="sign_failed")
        return f"{self.base_url}/storage/v1{signed}"


def build_storage(settings: Settings) -> ArtifactStorage:
    if settings.storage_backend == StorageBackend.SUPABASE:
        if not settings.storage_url or not settings.storage_service_key:
            raise ValueError(
                "STORAGE_URL and STORAGE_SERVICE_KEY are required for supabase storage"
            )
        return SupabaseStorage(
            settings.storage_url, settings.storage_service_key, settings.storage_bucket
        )
    return LocalStorage(settings.storage_local_root)
