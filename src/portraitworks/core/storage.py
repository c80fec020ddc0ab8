"""Artifact storage adapters.

Artifacts are JPEG files addressed by artifact id.  Every backend stores an
artifact at ``{prefix}/{artifact_id}.jpg`` and returns a public URL for it.
Uploads overwrite: storing the same id twice replaces the object instead of
failing or creating a second one, so a retried request never leaves orphans
behind.

Backends
--------
SupabaseArtifactStore
    Supabase Storage bucket (production).
LocalArtifactStore
    Directory on disk, served by the API under ``/artifacts`` (development).

Artifact ids
------------
A batch session id is a uuid4; each artifact id is ``{session_id}_{style}``.
Because the public URL depends only on the id, it can be rebuilt with
:meth:`ArtifactStoreBase.public_url` when the metadata entry is gone.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import httpx

from .config import PortraitworksConfig
from .errors import ArtifactFetchFailed, StorageUnavailable, UploadFailed

logger = logging.getLogger(__name__)

CONTENT_TYPE = "image/jpeg"

_ARTIFACT_ID_RE = re.compile(
    r"^(?P<session>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})_(?P<style>[a-z0-9]+)$"
)


def new_session_id() -> str:
    return str(uuid.uuid4())


def artifact_id_for(session_id: str, style: str) -> str:
    return f"{session_id}_{style}"


def parse_artifact_id(artifact_id: str) -> tuple[str, str] | None:
    """Split ``{uuid}_{style}`` into ``(session_id, style)``; None if malformed."""
    match = _ARTIFACT_ID_RE.match(artifact_id)
    if not match:
        return None
    return match.group("session"), match.group("style")


class ArtifactStoreBase(ABC):
    """Abstract artifact store.

    Attributes:
        prefix: Folder every artifact path starts with.
        fetch_timeout: Timeout in seconds for :meth:`fetch`.
    """

    name: str = "Base Artifact Store"

    def __init__(
        self,
        prefix: str,
        fetch_timeout: float = 45.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.prefix = prefix.strip("/")
        self.fetch_timeout = fetch_timeout
        self._transport = transport

    def path_for(self, artifact_id: str) -> str:
        return f"{self.prefix}/{artifact_id}.jpg" if self.prefix else f"{artifact_id}.jpg"

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def upload(self, data: bytes, artifact_id: str) -> str:
        """Store *data* under *artifact_id* (overwriting) and return its public URL.

        Raises:
            StorageUnavailable: If the backend is not configured.
            UploadFailed: If the backend rejects the upload.
        """

    @abstractmethod
    def public_url(self, artifact_id: str) -> str:
        """Deterministic public URL of *artifact_id*."""

    async def fetch(self, url: str) -> bytes:
        """Download artifact bytes from a public URL.

        Raises:
            ArtifactFetchFailed: On transport errors or non-2xx responses.
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ArtifactFetchFailed(
                f"Fetching {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.RequestError as exc:
            raise ArtifactFetchFailed(f"Fetching {url} failed: {exc}") from exc
        return response.content


class SupabaseArtifactStore(ArtifactStoreBase):
    """Supabase Storage backend (``supabase`` client, lazily created)."""

    name = "Supabase"

    def __init__(
        self,
        url: str | None,
        key: str | None,
        bucket: str,
        prefix: str,
        fetch_timeout: float = 45.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(prefix, fetch_timeout, transport)
        self.url = url
        self.key = key
        self.bucket = bucket
        self._client: Any = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    def _get_client(self) -> Any:
        if not self.is_configured:
            raise StorageUnavailable("Supabase not configured")
        if self._client is None:
            from supabase import create_client

            self._client = create_client(self.url, self.key)
        return self._client

    def _bucket(self) -> Any:
        return self._get_client().storage.from_(self.bucket)

    async def upload(self, data: bytes, artifact_id: str) -> str:
        bucket = self._bucket()
        path = self.path_for(artifact_id)
        try:
            await asyncio.to_thread(
                bucket.upload,
                path,
                data,
                {"content-type": CONTENT_TYPE, "upsert": "true"},
            )
        except Exception as exc:
            logger.error("Supabase upload of %s failed: %s", path, exc)
            raise UploadFailed(f"Upload of {artifact_id} failed: {exc}") from exc
        url = self.public_url(artifact_id)
        logger.info("Uploaded %s (%d bytes) -> %s", path, len(data), url)
        return url

    def public_url(self, artifact_id: str) -> str:
        if self._client is not None:
            return self._bucket().get_public_url(self.path_for(artifact_id))
        if not self.url:
            raise StorageUnavailable("Supabase not configured")
        # Same scheme the storage API returns, without needing a client.
        base = self.url.rstrip("/")
        return f"{base}/storage/v1/object/public/{self.bucket}/{self.path_for(artifact_id)}"


class LocalArtifactStore(ArtifactStoreBase):
    """Filesystem backend for development; files are served at ``/artifacts``."""

    name = "Local"
    mount_path = "/artifacts"

    def __init__(
        self,
        root: Path,
        public_base_url: str,
        prefix: str,
        fetch_timeout: float = 45.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(prefix, fetch_timeout, transport)
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def is_configured(self) -> bool:
        return True

    def _file_for(self, artifact_id: str) -> Path:
        return self.root / self.path_for(artifact_id)

    async def upload(self, data: bytes, artifact_id: str) -> str:
        target = self._file_for(artifact_id)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except OSError as exc:
            raise UploadFailed(f"Writing {target} failed: {exc}") from exc
        return self.public_url(artifact_id)

    def public_url(self, artifact_id: str) -> str:
        return f"{self.public_base_url}{self.mount_path}/{self.path_for(artifact_id)}"

    async def fetch(self, url: str) -> bytes:
        # Our own URLs are read from disk; anything else goes over HTTP.
        own_prefix = f"{self.public_base_url}{self.mount_path}/"
        if url.startswith(own_prefix):
            target = self.root / url[len(own_prefix) :]
            try:
                return await asyncio.to_thread(target.read_bytes)
            except OSError as exc:
                raise ArtifactFetchFailed(f"Reading {target} failed: {exc}") from exc
        return await super().fetch(url)


def build_store(
    config: PortraitworksConfig, transport: httpx.AsyncBaseTransport | None = None
) -> ArtifactStoreBase:
    """Create the artifact store selected by ``config.storage_backend``."""
    if config.storage_backend == "local":
        return LocalArtifactStore(
            root=config.local_storage_dir,
            public_base_url=config.public_base_url,
            prefix=config.storage_prefix,
            fetch_timeout=config.fetch_timeout_seconds,
            transport=transport,
        )
    return SupabaseArtifactStore(
        url=config.supabase_url,
        key=config.supabase_key,
        bucket=config.storage_bucket,
        prefix=config.storage_prefix,
        fetch_timeout=config.fetch_timeout_seconds,
        transport=transport,
    )
