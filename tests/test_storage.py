"""Cache store: upsert/lookup round-trip, hit counting, hash axis, soft delete."""

import asyncio

import pytest

from vidsave.errors import CacheUnavailable
from vidsave.storage import CacheRecord, CacheStore


def _record(source_key="tiktok:123456", content_hash="a" * 64, ref="file-1", size=10 * 1024 * 1024):
    return CacheRecord(
        source_key=source_key,
        content_hash=content_hash,
        delivery_ref=ref,
        delivery_ref_unique=f"{ref}-unique",
        size_bytes=size,
    )


@pytest.mark.asyncio
async def test_upsert_then_lookup_roundtrip(store):
    saved = await store.upsert(_record())
    assert saved.hit_count == 0

    found = await store.lookup_by_key("tiktok:123456")
    assert found is not None
    assert found.size_bytes == 10 * 1024 * 1024
    assert found.delivery_ref == "file-1"
    assert found.delivery_ref_unique == "file-1-unique"
    assert found.content_hash == "a" * 64


@pytest.mark.asyncio
async def test_lookup_by_key_counts_each_hit(store):
    await store.upsert(_record())

    first = await store.lookup_by_key("tiktok:123456")
    second = await store.lookup_by_key("tiktok:123456")
    assert first.hit_count == 1
    assert second.hit_count == 2
    assert second.last_used_at >= first.last_used_at


@pytest.mark.asyncio
async def test_lookup_by_key_missing_returns_none(store):
    assert await store.lookup_by_key("tiktok:nope") is None


@pytest.mark.asyncio
async def test_lookup_by_hash_missing_returns_none(store):
    assert await store.lookup_by_hash("f" * 64) is None


@pytest.mark.asyncio
async def test_lookup_by_hash_does_not_count_hits(store):
    await store.upsert(_record())

    by_hash = await store.lookup_by_hash("a" * 64)
    assert by_hash.source_key == "tiktok:123456"
    assert by_hash.hit_count == 0

    by_key = await store.lookup_by_key("tiktok:123456")
    assert by_key.hit_count == 1


@pytest.mark.asyncio
async def test_many_source_keys_share_one_hash(store):
    await store.upsert(_record(source_key="tiktok:1"))
    await store.upsert(_record(source_key="instagram:abc"))

    assert (await store.lookup_by_key("tiktok:1")).content_hash == "a" * 64
    assert (await store.lookup_by_key("instagram:abc")).content_hash == "a" * 64
    assert await store.lookup_by_hash("a" * 64) is not None


@pytest.mark.asyncio
async def test_upsert_updates_in_place_preserving_created_at_and_hits(store):
    await store.upsert(_record())
    before = await store.lookup_by_key("tiktok:123456")

    await store.upsert(_record(content_hash="b" * 64, ref="file-2", size=2048))
    after = await store.lookup_by_key("tiktok:123456")

    assert after.delivery_ref == "file-2"
    assert after.delivery_ref_unique == "file-2-unique"
    assert after.content_hash == "b" * 64
    assert after.size_bytes == 2048
    assert after.created_at == before.created_at
    assert after.hit_count == before.hit_count + 1
    assert await store.lookup_by_hash("a" * 64) is None


@pytest.mark.asyncio
async def test_concurrent_upserts_of_new_key_all_succeed(store):
    refs = [f"file-{i}" for i in range(5)]

    saved = await asyncio.gather(*(store.upsert(_record(source_key="tiktok:1", ref=ref)) for ref in refs))

    assert sorted(record.delivery_ref for record in saved) == refs
    stored = await store.lookup_by_key("tiktok:1")
    assert stored.delivery_ref in refs
    assert stored.delivery_ref_unique == f"{stored.delivery_ref}-unique"

    await store.upsert(_record(source_key="tiktok:1", ref="file-last"))
    assert (await store.lookup_by_key("tiktok:1")).delivery_ref == "file-last"


@pytest.mark.asyncio
async def test_upsert_rejects_empty_delivery_ref(store):
    with pytest.raises(ValueError):
        await store.upsert(_record(ref=""))


@pytest.mark.asyncio
async def test_soft_delete_hides_record_and_upsert_revives_it(store):
    await store.upsert(_record())

    assert await store.soft_delete("tiktok:123456") is True
    assert await store.soft_delete("tiktok:123456") is False
    assert await store.lookup_by_key("tiktok:123456") is None
    assert await store.lookup_by_hash("a" * 64) is None

    await store.upsert(_record(ref="file-9"))
    revived = await store.lookup_by_key("tiktok:123456")
    assert revived.delivery_ref == "file-9"


@pytest.mark.asyncio
async def test_uninitialized_store_reports_unavailable():
    store = CacheStore("sqlite+aiosqlite:///:memory:")
    with pytest.raises(CacheUnavailable):
        await store.lookup_by_key("tiktok:1")
