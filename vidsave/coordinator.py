"""
Download coordination: serve a resolved link from the cache when possible,
otherwise fetch, size-check, hash, dedup, deliver and remember the result.
"""

import asyncio
import contextlib
import dataclasses
import enum
import logging
from typing import AsyncContextManager, Awaitable, Callable, Optional, Protocol

from vidsave.config import DEFAULT_MAX_DOWNLOAD_MB, TELEGRAM_MAX_FILE_BYTES
from vidsave.errors import CacheUnavailable, DeliveryFailed, FetchFailed, FetchFailedKind, SizeExceeded, SizeLimit
from vidsave.fetch import FetchedMedia, cleanup
from vidsave.keys import content_digest, make_source_key
from vidsave.links import ResolvedLink
from vidsave.sender import DeliveryReceipt
from vidsave.storage import CacheRecord

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    async def fetch(self, url: str, proxy: str = "", platform: str | None = None) -> FetchedMedia: ...


class DeliverySink(Protocol):
    async def send_by_reference(self, chat_id: int, ref: str, share_key: str | None = None) -> None: ...

    async def send_by_bytes(
        self, chat_id: int, filename: str, data: bytes, share_key: str | None = None
    ) -> DeliveryReceipt | None: ...


class Store(Protocol):
    async def lookup_by_key(self, source_key: str) -> Optional[CacheRecord]: ...

    async def lookup_by_hash(self, content_hash: str) -> Optional[CacheRecord]: ...

    async def upsert(self, record: CacheRecord) -> CacheRecord: ...


class DeliverySource(enum.Enum):
    CACHE = "cache"
    DEDUP = "dedup"
    UPLOAD = "upload"


@dataclasses.dataclass(frozen=True)
class Delivery:
    source_key: str
    source: DeliverySource
    delivery_ref: str | None


@dataclasses.dataclass(frozen=True)
class CoordinatorConfig:
    proxy: str = ""
    max_bytes: int = DEFAULT_MAX_DOWNLOAD_MB * 1024 * 1024
    transport_max_bytes: int = TELEGRAM_MAX_FILE_BYTES


ProgressFactory = Callable[[], AsyncContextManager]


class DownloadCoordinator:
    def __init__(self, store: Store, fetcher: Fetcher, sink: DeliverySink, config: CoordinatorConfig) -> None:
        self._store = store
        self._fetcher = fetcher
        self._sink = sink
        self._config = config

    async def deliver(
        self,
        link: ResolvedLink,
        chat_id: int,
        progress: ProgressFactory | None = None,
    ) -> Delivery:
        source_key = make_source_key(link.platform, link.video_id)

        cached = await self._lookup(self._store.lookup_by_key, source_key, axis="source_key")
        if cached is not None:
            logger.info("Cache hit: source_key=%s hit_count=%s", source_key, cached.hit_count)
            await self._sink.send_by_reference(chat_id, cached.delivery_ref, share_key=source_key)
            return Delivery(source_key=source_key, source=DeliverySource.CACHE, delivery_ref=cached.delivery_ref)

        async with progress() if progress else contextlib.nullcontext():
            media = await self._fetcher.fetch(link.url, self._config.proxy, platform=link.platform)
            try:
                return await self._deliver_fetched(link, chat_id, source_key, media)
            finally:
                await asyncio.to_thread(cleanup, media.path)

    def check_size(self, size_bytes: int) -> None:
        if size_bytes > self._config.max_bytes:
            raise SizeExceeded(SizeLimit.CONFIGURED, size_bytes, self._config.max_bytes)
        if size_bytes > self._config.transport_max_bytes:
            raise SizeExceeded(SizeLimit.TRANSPORT, size_bytes, self._config.transport_max_bytes)

    async def _deliver_fetched(
        self,
        link: ResolvedLink,
        chat_id: int,
        source_key: str,
        media: FetchedMedia,
    ) -> Delivery:
        try:
            size_bytes = (await asyncio.to_thread(media.path.stat)).st_size
        except OSError as err:
            raise FetchFailed(FetchFailedKind.NO_OUTPUT_PRODUCED, f"cannot stat {media.path}: {err}") from err
        self.check_size(size_bytes)

        try:
            data = await asyncio.to_thread(media.path.read_bytes)
        except OSError as err:
            raise FetchFailed(FetchFailedKind.NO_OUTPUT_PRODUCED, f"cannot read {media.path}: {err}") from err
        content_hash = await asyncio.to_thread(content_digest, data)

        dedup = await self._lookup(self._store.lookup_by_hash, content_hash, axis="content_hash")
        if dedup is not None:
            logger.info("Dedup hit: content_hash=%s existing_key=%s", content_hash, dedup.source_key)
            try:
                await self._sink.send_by_reference(chat_id, dedup.delivery_ref, share_key=source_key)
            except DeliveryFailed as err:
                logger.warning("Dedup send failed, uploading fresh: source_key=%s err=%s", source_key, err)
            else:
                await self._save(
                    CacheRecord(
                        source_key=source_key,
                        content_hash=content_hash,
                        delivery_ref=dedup.delivery_ref,
                        delivery_ref_unique=dedup.delivery_ref_unique,
                        size_bytes=len(data),
                    )
                )
                return Delivery(source_key=source_key, source=DeliverySource.DEDUP, delivery_ref=dedup.delivery_ref)

        receipt = await self._sink.send_by_bytes(chat_id, f"{link.video_id}.mp4", data, share_key=source_key)
        logger.info("Video sent: source_key=%s size_bytes=%s", source_key, len(data))
        if receipt is None:
            return Delivery(source_key=source_key, source=DeliverySource.UPLOAD, delivery_ref=None)

        await self._save(
            CacheRecord(
                source_key=source_key,
                content_hash=content_hash,
                delivery_ref=receipt.ref,
                delivery_ref_unique=receipt.ref_unique,
                size_bytes=len(data),
            )
        )
        return Delivery(source_key=source_key, source=DeliverySource.UPLOAD, delivery_ref=receipt.ref)

    @staticmethod
    async def _lookup(
        lookup: Callable[[str], Awaitable[Optional[CacheRecord]]],
        value: str,
        axis: str,
    ) -> Optional[CacheRecord]:
        try:
            return await lookup(value)
        except CacheUnavailable as err:
            logger.error("Cache lookup error, treating as miss: axis=%s value=%s err=%s", axis, value, err)
            return None

    async def _save(self, record: CacheRecord) -> None:
        try:
            await self._store.upsert(record)
        except CacheUnavailable as err:
            logger.error("Failed to save cache entry: source_key=%s err=%s", record.source_key, err)
            return
        logger.info("Cached video: source_key=%s file_id=%s", record.source_key, record.delivery_ref)
