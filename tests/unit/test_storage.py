"""Tests for portraitworks.core.storage — artifact store adapters.

HTTP fetches go through ``httpx.MockTransport``; the Supabase client is a
``MagicMock`` so no network access happens.
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import MagicMock

import httpx
import pytest

from portraitworks.core.errors import ArtifactFetchFailed, StorageUnavailable, UploadFailed
from portraitworks.core.storage import (
    LocalArtifactStore,
    SupabaseArtifactStore,
    artifact_id_for,
    build_store,
    new_session_id,
    parse_artifact_id,
)

pytestmark = pytest.mark.unit


class TestArtifactIds:
    def test_round_trip_of_generated_id(self):
        session_id = new_session_id()
        assert parse_artifact_id(artifact_id_for(session_id, "anime")) == (session_id, "anime")

    @pytest.mark.parametrize(
        "value",
        ["mock_123", "not-a-uuid_anime", f"{uuid.uuid4()}", f"{uuid.uuid4()}_", "", "x_y_z"],
    )
    def test_malformed_ids(self, value):
        assert parse_artifact_id(value) is None


class TestLocalArtifactStore:
    @pytest.fixture
    def store(self, temp_dir) -> LocalArtifactStore:
        return LocalArtifactStore(temp_dir / "store", "http://testserver/", "valentines")

    def test_upload_writes_file_and_returns_url(self, store, temp_dir):
        url = asyncio.run(store.upload(b"jpeg-1", "abc_anime"))
        assert url == "http://testserver/artifacts/valentines/abc_anime.jpg"
        assert (temp_dir / "store" / "valentines" / "abc_anime.jpg").read_bytes() == b"jpeg-1"

    def test_reupload_overwrites_with_same_url(self, store, temp_dir):
        first = asyncio.run(store.upload(b"jpeg-1", "abc_anime"))
        second = asyncio.run(store.upload(b"jpeg-2", "abc_anime"))
        assert first == second
        files = list((temp_dir / "store" / "valentines").iterdir())
        assert len(files) == 1
        assert files[0].read_bytes() == b"jpeg-2"

    def test_public_url_is_deterministic(self, store):
        assert store.public_url("abc_anime") == store.public_url("abc_anime")

    def test_fetch_own_url_reads_disk(self, store):
        url = asyncio.run(store.upload(b"jpeg-bytes", "abc_disney"))
        assert asyncio.run(store.fetch(url)) == b"jpeg-bytes"

    def test_fetch_missing_file_fails(self, store):
        with pytest.raises(ArtifactFetchFailed):
            asyncio.run(store.fetch(store.public_url("missing_anime")))


class TestRemoteFetch:
    def _store(self, handler) -> SupabaseArtifactStore:
        return SupabaseArtifactStore(
            url="https://xyz.supabase.co",
            key="service-key",
            bucket="images",
            prefix="valentines",
            transport=httpx.MockTransport(handler),
        )

    def test_fetch_returns_body(self):
        store = self._store(lambda request: httpx.Response(200, content=b"remote-jpeg"))
        assert asyncio.run(store.fetch("https://cdn.example/a.jpg")) == b"remote-jpeg"

    def test_non_2xx_is_fetch_failure(self):
        store = self._store(lambda request: httpx.Response(404))
        with pytest.raises(ArtifactFetchFailed, match="404"):
            asyncio.run(store.fetch("https://cdn.example/a.jpg"))

    def test_transport_error_is_fetch_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        store = self._store(handler)
        with pytest.raises(ArtifactFetchFailed):
            asyncio.run(store.fetch("https://cdn.example/a.jpg"))


class TestSupabaseArtifactStore:
    def test_unconfigured_upload_is_storage_unavailable(self):
        store = SupabaseArtifactStore(None, None, "images", "valentines")
        assert store.is_configured is False
        with pytest.raises(StorageUnavailable):
            asyncio.run(store.upload(b"data", "abc_anime"))

    def test_public_url_without_client(self):
        store = SupabaseArtifactStore("https://xyz.supabase.co/", "k", "images", "valentines")
        assert store.public_url("abc_anime") == (
            "https://xyz.supabase.co/storage/v1/object/public/images/valentines/abc_anime.jpg"
        )

    def test_upload_uses_upsert(self):
        store = SupabaseArtifactStore("https://xyz.supabase.co", "k", "images", "valentines")
        client = MagicMock()
        bucket = client.storage.from_.return_value
        bucket.get_public_url.return_value = "https://public/valentines/abc_anime.jpg"
        store._client = client

        url = asyncio.run(store.upload(b"data", "abc_anime"))

        assert url == "https://public/valentines/abc_anime.jpg"
        client.storage.from_.assert_called_with("images")
        path, data, options = bucket.upload.call_args.args
        assert path == "valentines/abc_anime.jpg"
        assert data == b"data"
        assert options["upsert"] == "true"
        assert options["content-type"] == "image/jpeg"

    def test_rejected_upload_is_upload_failed(self):
        store = SupabaseArtifactStore("https://xyz.supabase.co", "k", "images", "valentines")
        client = MagicMock()
        client.storage.from_.return_value.upload.side_effect = RuntimeError("bucket missing")
        store._client = client
        with pytest.raises(UploadFailed, match="bucket missing"):
            asyncio.run(store.upload(b"data", "abc_anime"))


class TestBuildStore:
    def test_local_backend(self, test_config):
        assert isinstance(build_store(test_config), LocalArtifactStore)

    def test_supabase_backend(self, test_config):
        cfg = test_config.model_copy(update={"storage_backend": "supabase"})
        assert isinstance(build_store(cfg), SupabaseArtifactStore)
