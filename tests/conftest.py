import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from vidsave.errors import DeliveryFailed
from vidsave.fetch import FetchedMedia
from vidsave.sender import DeliveryReceipt
from vidsave.storage import CacheStore


@pytest_asyncio.fixture
async def store(tmp_path):
    """Cache store on a throwaway SQLite file."""
    cache_store = CacheStore(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    await cache_store.init()
    yield cache_store
    await cache_store.dispose()


@pytest.fixture
def fetch_root(tmp_path):
    root = tmp_path / "fetch"
    root.mkdir()
    return root


class FakeFetcher:
    def __init__(self, root: Path, payload: bytes = b"video-bytes", error: Exception | None = None):
        self.root = root
        self.payload = payload
        self.error = error
        self.calls = []
        self.fetched = []

    async def fetch(self, url, proxy="", platform=None):
        self.calls.append((url, proxy, platform))
        if self.error is not None:
            raise self.error
        workdir = Path(tempfile.mkdtemp(prefix="vidsave-", dir=self.root))
        path = workdir / "video.mp4"
        path.write_bytes(self.payload)
        self.fetched.append(path)
        return FetchedMedia(path=path)


class FakeSink:
    def __init__(self):
        self.by_reference = []
        self.by_bytes = []
        self.stale_refs = set()
        self.upload_error = None

    async def send_by_reference(self, chat_id, ref, share_key=None):
        if ref in self.stale_refs:
            raise DeliveryFailed(f"wrong file identifier: {ref}")
        self.by_reference.append((chat_id, ref, share_key))

    async def send_by_bytes(self, chat_id, filename, data, share_key=None):
        if self.upload_error is not None:
            raise self.upload_error
        self.by_bytes.append((chat_id, filename, data, share_key))
        n = len(self.by_bytes)
        return DeliveryReceipt(ref=f"file-{n}", ref_unique=f"unique-{n}")


class FakeBot:
    """Records Bot API calls; ``failures`` maps a method name to exceptions raised in order."""

    def __init__(self):
        self.calls = []
        self.failures = {}

    async def _call(self, name, kwargs):
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)
        self.calls.append((name, kwargs))
        return len(self.calls)

    async def send_video(self, **kwargs):
        n = await self._call("send_video", kwargs)
        return SimpleNamespace(video=SimpleNamespace(file_id=f"tg-file-{n}", file_unique_id=f"tg-unique-{n}"))

    async def send_message(self, **kwargs):
        n = await self._call("send_message", kwargs)
        return SimpleNamespace(message_id=n)

    async def edit_message_text(self, **kwargs):
        await self._call("edit_message_text", kwargs)
        return True

    async def delete_message(self, **kwargs):
        await self._call("delete_message", kwargs)
        return True

    def named(self, name):
        return [kwargs for call_name, kwargs in self.calls if call_name == name]


@pytest.fixture
def fake_bot():
    return FakeBot()


@pytest.fixture
def sink():
    return FakeSink()


async def no_sleep(_seconds):
    return None
