"""
Pytest configuration and fixtures for the trade-ad worker tests.

Outbound HTTP goes through httpx.MockTransport, RSS readings and process
exit are fakes, so nothing here touches the network or kills the runner.
"""
import io
import os
import tempfile

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from PIL import Image

# Keep import-time defaults out of the repo root
_TMP = tempfile.mkdtemp(prefix="tradead-tests-")
os.environ.setdefault("CACHE_DIR", os.path.join(_TMP, "image-cache"))
os.environ.setdefault("ITEMS_CACHE_PATH", os.path.join(_TMP, "items.json"))

from cache import ArtifactCache
from item_data import ItemStore
from resource_monitor import ResourceMonitor
from state import ServiceContext
from trade_imagegen import render_card
from worker import create_app


def png_bytes(color=(200, 30, 30, 255), size=(24, 24)) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", size, color).save(out, "PNG")
    return out.getvalue()


class FakeMemory:
    """Stands in for the RSS reader; tests move `mb` around."""

    def __init__(self, mb: int = 100):
        self.mb = mb
        self.calls = 0

    def __call__(self) -> int:
        self.calls += 1
        return self.mb


class ExitRecorder:
    def __init__(self):
        self.codes = []

    def __call__(self, code: int) -> None:
        self.codes.append(code)


class FakeRoblox:
    """Thumbnail API + CDN + tag images behind one MockTransport."""

    def __init__(self, known_ids=(1, 2, 3), thumbs_status: int = 200):
        self.known_ids = set(known_ids)
        self.thumbs_status = thumbs_status
        self.requests = []

    def cdn_hits(self):
        return [r for r in self.requests if r.url.host in ("cdn.test", "www.rolimons.com")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "thumbnails.roblox.com":
            if self.thumbs_status != 200:
                return httpx.Response(self.thumbs_status)
            ids = [int(x) for x in request.url.params["assetIds"].split(",")]
            data = [
                {"targetId": i, "state": "Completed", "imageUrl": f"https://cdn.test/{i}.png"}
                for i in ids if i in self.known_ids
            ]
            return httpx.Response(200, json={"data": data})
        if host in ("cdn.test", "www.rolimons.com"):
            return httpx.Response(200, content=png_bytes(), headers={"Content-Type": "image/png"})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class RenderSpy:
    """Wraps the real renderer and keeps what it was asked to draw."""

    def __init__(self, inner=render_card):
        self.inner = inner
        self.calls = []

    async def __call__(self, offer, request, totals):
        self.calls.append((offer, request, totals))
        return await self.inner(offer, request, totals)


ITEMS = {
    "1": {"id": 1, "name": "Red Valk", "rap": 100, "value": 150},
    "2": {"id": 2, "name": "Sparkle Time", "rap": 50, "value": None},
    "3": {"id": 3, "name": "Dominus", "rap": 200, "value": 300},
}

TRADE = [9001, 1700000000, 42, "seller", {"items": [1, 2]}, {"items": [3], "tags": [1]}]


@pytest.fixture
def memory():
    return FakeMemory(100)


@pytest.fixture
def exits():
    return ExitRecorder()


@pytest.fixture
def monitor(memory, exits):
    return ResourceMonitor(
        limit_mb=400,
        sample=memory,
        sample_interval=0.005,
        check_interval=3600,
        grace=0,
        exit_code=1,
        terminate=exits,
    )


@pytest.fixture
def roblox():
    return FakeRoblox()


@pytest.fixture
def render_spy():
    return RenderSpy()


@pytest_asyncio.fixture
async def http(roblox):
    async with httpx.AsyncClient(transport=roblox.transport()) as client:
        yield client


@pytest.fixture
def artifact_cache(tmp_path):
    return ArtifactCache(str(tmp_path / "cache"), max_files=1000, max_size_mb=50)


@pytest.fixture
def item_store(tmp_path):
    store = ItemStore(path=str(tmp_path / "items.json"))
    store.preload(ITEMS)
    return store


@pytest.fixture
def ctx(http, artifact_cache, item_store, monitor, render_spy):
    return ServiceContext(
        max_jobs=1,
        queue_concurrency=1,
        force_gc=False,
        client=http,
        cache=artifact_cache,
        items=item_store,
        monitor=monitor,
        render=render_spy,
    )


@pytest_asyncio.fixture
async def client(ctx):
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=create_app(ctx))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
