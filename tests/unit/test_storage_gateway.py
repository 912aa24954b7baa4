"""
Unit tests for the storage gateway
Path convention, sanitization, uploads and promotion of provider URLs
"""
import re

import pytest

from conftest import STORAGE_BASE_URL, make_wav
from songstudio.core.result import ErrorKind
from songstudio.storage.gateway import (
    StorageCategory,
    build_storage_path,
    sanitize_project_name
)

PATH_PATTERN = re.compile(r"^ai_generated/user-1/My_Song_intro_\d+_[0-9a-f]{6}\.wav$")


@pytest.mark.unit
class TestStoragePaths:
    """Naming convention for stored objects"""

    def test_sanitize_strips_non_ascii_and_punctuation(self):
        assert sanitize_project_name("שיר חדש My Song!") == "My_Song"
        assert sanitize_project_name("  rock   anthem  ") == "rock_anthem"
        assert sanitize_project_name("a.b/c-d_e") == "abc-d_e"

    def test_sanitize_falls_back_to_default(self):
        assert sanitize_project_name("פרויקט חדש") == "project"
        assert sanitize_project_name(None) == "project"
        assert sanitize_project_name("!!!", default="audio") == "audio"

    def test_path_follows_convention(self):
        path = build_storage_path(
            StorageCategory.AI_GENERATED, "user-1", "My Song", "intro", "wav", artifact_key="suno:abc:intro"
        )
        assert PATH_PATTERN.match(path)

    def test_artifact_key_makes_path_deterministic(self):
        first = build_storage_path(StorageCategory.ROEX, "u", "Song", "mix", artifact_key="roex:42:mix")
        second = build_storage_path(StorageCategory.ROEX, "u", "Song", "mix", artifact_key="roex:42:mix")
        other = build_storage_path(StorageCategory.ROEX, "u", "Song", "mix", artifact_key="roex:43:mix")

        assert first == second
        assert first != other

    def test_anonymous_owner_and_explicit_timestamp(self):
        path = build_storage_path(StorageCategory.RECORDINGS, None, "Song", "take", "mp3", timestamp_ms=1700000000000)

        assert path.startswith("recordings/anonymous/Song_take_1700000000000_")
        assert path.endswith(".mp3")


@pytest.mark.unit
class TestStorageGateway:
    """Upload, download and promotion against the in-memory bucket"""

    @pytest.mark.asyncio
    async def test_upload_returns_public_url(self, gateway, object_store):
        data = make_wav()
        result = await gateway.upload(data, "audio/wav", "recordings/u/Song_take_1_abcdef.wav")

        assert result.success
        assert result.data == f"{STORAGE_BASE_URL}/storage/v1/object/public/recordings/recordings/u/Song_take_1_abcdef.wav"
        assert object_store.objects[result.data] == data

        request = object_store.requests[-1]
        assert request.headers["Authorization"] == "Bearer service-key"
        assert request.headers["x-upsert"] == "true"
        assert request.headers["Content-Type"] == "audio/wav"

    @pytest.mark.asyncio
    async def test_empty_upload_is_rejected_without_request(self, gateway, object_store):
        result = await gateway.upload(b"", "audio/wav", "recordings/u/empty.wav")

        assert result.kind == ErrorKind.INPUT
        assert object_store.requests == []

    @pytest.mark.asyncio
    async def test_upload_failure_is_storage_error(self, gateway, object_store):
        object_store.fail_uploads = True
        result = await gateway.upload(make_wav(), "audio/wav", "recordings/u/take.wav")

        assert not result.success
        assert result.kind == ErrorKind.STORAGE

    @pytest.mark.asyncio
    async def test_download_missing_object_fails(self, gateway):
        result = await gateway.download("https://cdn.test/missing.wav")

        assert not result.success
        assert result.kind == ErrorKind.TRANSIENT

    @pytest.mark.asyncio
    async def test_promote_rehosts_provider_url(self, gateway, object_store):
        provider_url = object_store.put("https://cdn.provider.test/tmp/abc.mp3", make_wav())

        asset = await gateway.promote(
            provider_url, StorageCategory.AI_GENERATED, "user-1", "My Song", "intro", artifact_key="suno:abc:intro"
        )

        assert asset.durable
        assert asset.source_url == provider_url
        assert gateway.is_owned_url(asset.url)
        assert "/ai_generated/user-1/My_Song_intro_" in asset.url
        assert asset.url.endswith(".mp3")

    @pytest.mark.asyncio
    async def test_promote_retry_targets_same_object(self, gateway, object_store):
        provider_url = object_store.put("https://cdn.provider.test/tmp/abc.wav", make_wav())

        first = await gateway.promote(provider_url, StorageCategory.ROEX, "u", "Song", "mix", artifact_key="roex:1:mix")
        second = await gateway.promote(provider_url, StorageCategory.ROEX, "u", "Song", "mix", artifact_key="roex:1:mix")

        assert first.url == second.url
        assert len(set(object_store.uploads)) == 1

    @pytest.mark.asyncio
    async def test_promote_falls_back_when_download_fails(self, gateway):
        asset = await gateway.promote(
            "https://cdn.provider.test/expired.wav", StorageCategory.ROEX, "u", "Song", "mix", artifact_key="k"
        )

        assert not asset.durable
        assert asset.url == "https://cdn.provider.test/expired.wav"

    @pytest.mark.asyncio
    async def test_promote_falls_back_when_upload_fails(self, gateway, object_store):
        provider_url = object_store.put("https://cdn.provider.test/abc.wav", make_wav())
        object_store.fail_uploads = True

        asset = await gateway.promote(provider_url, StorageCategory.ROEX, "u", "Song", "mix", artifact_key="k")

        assert not asset.durable
        assert asset.url == provider_url

    @pytest.mark.asyncio
    async def test_promote_keeps_owned_url_without_requests(self, gateway, object_store):
        owned = gateway.get_public_url("final/u/Song_final_1_abcdef.wav")

        asset = await gateway.promote(owned, StorageCategory.FINAL, "u", "Song", "final", artifact_key="k")

        assert asset.url == owned
        assert asset.durable
        assert object_store.requests == []
