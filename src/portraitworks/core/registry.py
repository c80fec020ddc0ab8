"""Process-lifetime metadata storage.

This module isolates the lookup tables of the service from the route
handlers:

- :class:`KeyValueStore` is the storage interface (get / insert-once / put /
  iterate).  :class:`InMemoryKeyValueStore` is the only implementation; it is
  created at application startup and lives as long as the process.
- :class:`MetadataRegistry` maps artifact ids to :class:`ArtifactMetadata`.
  It is append-only: an id is inserted once and never updated.

The in-memory store is unsynchronized.  It is only correct inside a single
process running a cooperative (asyncio) scheduler, and it loses everything on
restart.  Swapping in a durable store means implementing
:class:`KeyValueStore`; nothing in the pipeline depends on the dict.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    """Minimal key-value storage interface used by the registries."""

    @abstractmethod
    def get(self, key: str) -> V | None: ...

    @abstractmethod
    def put_if_absent(self, key: str, value: V) -> V:
        """Insert *value* unless *key* exists; return the stored value."""

    @abstractmethod
    def put(self, key: str, value: V) -> None: ...

    @abstractmethod
    def values(self) -> Iterator[V]: ...

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class InMemoryKeyValueStore(KeyValueStore[V]):
    """Dict-backed store; iteration follows insertion order."""

    def __init__(self) -> None:
        self._data: dict[str, V] = {}

    def get(self, key: str) -> V | None:
        return self._data.get(key)

    def put_if_absent(self, key: str, value: V) -> V:
        return self._data.setdefault(key, value)

    def put(self, key: str, value: V) -> None:
        self._data[key] = value

    def values(self) -> Iterator[V]:
        return iter(list(self._data.values()))

    def __len__(self) -> int:
        return len(self._data)


class ArtifactMetadata(BaseModel):
    """Provenance of one stored artifact.

    Attributes:
        artifact_id: ``{session_id}_{style}``.
        style: Style identifier the artifact was rendered with.
        public_url: Public locator returned by the artifact store.
        original_filename: Filename of the uploaded photo, if known.
        original_mime_type: Declared MIME type of the uploaded photo.
        session_id: Batch session that produced the artifact.
        created_at: Unix timestamp of insertion.
    """

    model_config = ConfigDict(frozen=True)

    artifact_id: str
    style: str
    public_url: str
    original_filename: str | None = None
    original_mime_type: str | None = None
    session_id: str | None = None
    created_at: float = Field(default_factory=time.time)


class MetadataRegistry:
    """Append-only mapping from artifact id to :class:`ArtifactMetadata`."""

    def __init__(self, store: KeyValueStore[ArtifactMetadata] | None = None) -> None:
        self._store: KeyValueStore[ArtifactMetadata] = (
            store if store is not None else InMemoryKeyValueStore()
        )

    def record(self, metadata: ArtifactMetadata) -> ArtifactMetadata:
        """Insert metadata for a new artifact id.

        Recording an id that already exists keeps the first entry and returns
        it; the registry never holds two entries for one id.
        """
        stored = self._store.put_if_absent(metadata.artifact_id, metadata)
        if stored is not metadata:
            logger.debug("Artifact %s already recorded; keeping first entry", metadata.artifact_id)
        return stored

    def get(self, artifact_id: str) -> ArtifactMetadata | None:
        return self._store.get(artifact_id)

    def exists(self, artifact_id: str) -> bool:
        return artifact_id in self._store

    def find_by_session(self, session_id: str) -> list[ArtifactMetadata]:
        """Return a session's artifacts in the order they were recorded."""
        return [m for m in self._store.values() if m.session_id == session_id]
