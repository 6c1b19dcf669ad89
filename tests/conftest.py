"""Shared fixtures: in-memory store, fake generators, passthrough object store."""

import asyncio
import itertools

import pytest

from studio import metrics
from studio.pipeline.asset_store import AssetStore
from studio.pipeline.derivation import DerivationLinker
from studio.pipeline.errors import GenerationFailed, NotFound
from studio.pipeline.models import AssetKind, AssetStatus
from studio.pipeline.orchestrator import GenerationOrchestrator
from studio.pipeline.slideshow import SlideshowGrouper
from studio.pipeline.storage import PassthroughObjectStore


class FakeImageGenerator:
    """Returns one URL per call. Prompts containing a `fail_on` marker raise GenerationFailed."""

    def __init__(self, fail_on=(), gate=None):
        self.calls = []
        self.fail_on = tuple(fail_on)
        self.gate = gate
        self.active = 0
        self.peak = 0
        self._n = itertools.count(1)

    async def generate(self, prompt, model, options=None):
        self.calls.append({"prompt": prompt, "model": model, "options": options})
        n = next(self._n)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if any(marker in prompt for marker in self.fail_on):
                raise GenerationFailed("upstream returned 500", code="http_500")
            return [f"https://gen.test/image-{n}.png"]
        finally:
            self.active -= 1


class FakeVideoGenerator:
    def __init__(self, fail_on=(), gate=None):
        self.calls = []
        self.fail_on = tuple(fail_on)
        self.gate = gate
        self._n = itertools.count(1)

    async def generate(self, source_image_url, model, options=None):
        self.calls.append({"source": source_image_url, "model": model, "options": options})
        n = next(self._n)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        prompt = (options or {}).get("prompt", "")
        if any(marker in prompt for marker in self.fail_on):
            raise GenerationFailed("video model crashed", code="http_502")
        return f"https://gen.test/video-{n}.mp4"


class MemoryGateway:
    """In-memory stand-in for the production_sessions table."""

    def __init__(self):
        self.rows = {}
        self.updates = []
        self.fail_next = 0
        self._ids = itertools.count(1)

    async def create(self, name=None):
        row = {"id": f"s{next(self._ids)}", "name": name or "Session", "assets": [], "settings": {}, "status": "active"}
        self.rows[row["id"]] = row
        return row

    async def get(self, session_id):
        if session_id not in self.rows:
            raise NotFound(session_id, "Session")
        return self.rows[session_id]

    async def update(self, session_id, updates):
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("supabase unreachable")
        self.updates.append(updates)
        self.rows[session_id].update(updates)
        return self.rows[session_id]

    async def list_recent(self, limit=20):
        return [r for r in self.rows.values() if r["status"] == "active"][:limit]

    async def archive(self, session_id):
        self.rows[session_id]["status"] = "archived"

    async def delete(self, session_id):
        if session_id not in self.rows:
            raise NotFound(session_id, "Session")
        return self.rows.pop(session_id)


async def spin(times: int = 20):
    """Give scheduled tasks a few loop iterations."""
    for _ in range(times):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return AssetStore()


@pytest.fixture
def image_gen():
    return FakeImageGenerator()


@pytest.fixture
def video_gen():
    return FakeVideoGenerator()


@pytest.fixture
def orchestrator(store, image_gen, video_gen):
    return GenerationOrchestrator(store, image_gen, video_gen, PassthroughObjectStore(), concurrency=4)


@pytest.fixture
def linker(store, orchestrator):
    return DerivationLinker(store, orchestrator, video_model="pixverse/pixverse-v4.5")


@pytest.fixture
def grouper(store, orchestrator):
    return SlideshowGrouper(store, orchestrator, model="black-forest-labs/flux-schnell")


@pytest.fixture
def completed_image(store):
    """Factory: put a completed image straight into the store, bypassing generation."""

    def _make(prompt="a lighthouse at dusk", url=None, metadata=None):
        asset_id = store.create_asset(AssetKind.IMAGE, prompt, metadata or {})
        token = store.start_job(asset_id)
        store.complete_job(asset_id, token, AssetStatus.COMPLETED, url=url or f"https://cdn.test/{asset_id}.png")
        return asset_id

    return _make
