"""Tests for batch generation: ordering, isolation, concurrency cap, stale results."""

import asyncio

import pytest

from studio import metrics
from studio.pipeline.models import AssetKind, AssetStatus, GenerationRequest
from studio.pipeline.orchestrator import VARIATION_SUFFIXES, GenerationOrchestrator, variation_prompts
from studio.pipeline.storage import PassthroughObjectStore

from .conftest import FakeImageGenerator, FakeVideoGenerator, spin


@pytest.mark.asyncio
async def test_batch_returns_pending_ids_in_order(store, orchestrator):
    ids = orchestrator.generate_batch([
        GenerationRequest(prompt="sunrise"),
        GenerationRequest(prompt="sunset"),
    ])

    assert len(ids) == 2
    assert [store.get(i).prompt for i in ids] == ["sunrise", "sunset"]
    assert all(store.get(i).status == AssetStatus.PENDING for i in ids)

    await orchestrator.drain()

    assets = [store.get(i) for i in ids]
    assert all(a.status == AssetStatus.COMPLETED for a in assets)
    assert all(a.url.startswith("https://gen.test/") for a in assets)
    assert metrics.get_counter("assets.completed") == 2


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_siblings(store):
    image_gen = FakeImageGenerator(fail_on=("sunset",))
    orchestrator = GenerationOrchestrator(store, image_gen, FakeVideoGenerator(), PassthroughObjectStore())

    ok_id, bad_id = orchestrator.generate_batch([
        GenerationRequest(prompt="sunrise"),
        GenerationRequest(prompt="sunset"),
    ])
    await orchestrator.drain()

    ok, bad = store.get(ok_id), store.get(bad_id)
    assert ok.status == AssetStatus.COMPLETED
    assert bad.status == AssetStatus.FAILED
    assert bad.url == ""
    assert bad.metadata["errorCode"] == "http_500"
    assert "500" in bad.metadata["error"]
    assert metrics.get_counter("assets.failed") == 1


@pytest.mark.asyncio
async def test_concurrency_cap(store):
    gate = asyncio.Event()
    image_gen = FakeImageGenerator(gate=gate)
    orchestrator = GenerationOrchestrator(
        store, image_gen, FakeVideoGenerator(), PassthroughObjectStore(), concurrency=2
    )

    ids = orchestrator.generate_batch([GenerationRequest(prompt=f"p{i}") for i in range(6)])
    await spin()

    statuses = [store.get(i).status for i in ids]
    assert statuses.count(AssetStatus.GENERATING) == 2
    assert statuses.count(AssetStatus.PENDING) == 4

    gate.set()
    await orchestrator.drain()

    assert image_gen.peak == 2
    assert all(store.get(i).status == AssetStatus.COMPLETED for i in ids)


@pytest.mark.asyncio
async def test_result_for_deleted_asset_is_discarded(store):
    gate = asyncio.Event()
    orchestrator = GenerationOrchestrator(
        store, FakeImageGenerator(gate=gate), FakeVideoGenerator(), PassthroughObjectStore()
    )

    (asset_id,) = orchestrator.generate_batch([GenerationRequest(prompt="doomed")])
    await spin()
    assert store.get(asset_id).status == AssetStatus.GENERATING

    store.delete(asset_id)
    gate.set()
    outcomes = await orchestrator.drain()

    assert not store.exists(asset_id)
    assert outcomes[0].discarded is True
    assert orchestrator.request_for(asset_id) is None
    assert metrics.get_counter("assets.completed") == 0


@pytest.mark.asyncio
async def test_deleted_before_start_is_skipped(store):
    gate = asyncio.Event()
    image_gen = FakeImageGenerator(gate=gate)
    orchestrator = GenerationOrchestrator(
        store, image_gen, FakeVideoGenerator(), PassthroughObjectStore(), concurrency=1
    )

    first, second = orchestrator.generate_batch([GenerationRequest(prompt="a"), GenerationRequest(prompt="b")])
    await spin()
    store.delete(second)
    gate.set()
    await orchestrator.drain()

    assert store.get(first).status == AssetStatus.COMPLETED
    assert [c["prompt"] for c in image_gen.calls] == ["a"]


@pytest.mark.asyncio
async def test_requests_forgotten_once_assets_are_gone(store, orchestrator):
    kept, dropped = orchestrator.generate_batch([GenerationRequest(prompt="kept"), GenerationRequest(prompt="dropped")])
    await orchestrator.drain()
    store.delete(dropped)

    (later,) = orchestrator.generate_batch([GenerationRequest(prompt="later")])
    await orchestrator.drain()

    assert orchestrator.request_for(dropped) is None
    assert orchestrator.request_for(kept).prompt == "kept"
    assert orchestrator.request_for(later).prompt == "later"


@pytest.mark.asyncio
async def test_prompt_edit_while_queued_is_used(store):
    gate = asyncio.Event()
    image_gen = FakeImageGenerator(gate=gate)
    orchestrator = GenerationOrchestrator(
        store, image_gen, FakeVideoGenerator(), PassthroughObjectStore(), concurrency=1
    )

    _, queued = orchestrator.generate_batch([GenerationRequest(prompt="a"), GenerationRequest(prompt="b")])
    await spin()
    store.edit_prompt(queued, "b, but golden hour")
    gate.set()
    await orchestrator.drain()

    assert image_gen.calls[1]["prompt"] == "b, but golden hour"


@pytest.mark.asyncio
async def test_initial_metadata_and_suffix(store, image_gen, orchestrator):
    (asset_id,) = orchestrator.generate_batch([
        GenerationRequest(prompt="a chapel", aspect_ratio="16:9", prompt_suffix=", film grain", metadata={"theme": "faith"}),
    ])
    await orchestrator.drain()

    asset = store.get(asset_id)
    assert asset.prompt == "a chapel"
    assert asset.metadata["aspectRatio"] == "16:9"
    assert asset.metadata["theme"] == "faith"
    assert asset.metadata["model"] == image_gen.calls[0]["model"]
    assert image_gen.calls[0]["prompt"] == "a chapel, film grain"


@pytest.mark.asyncio
async def test_empty_generator_output_fails(store):
    class NoOutput(FakeImageGenerator):
        async def generate(self, prompt, model, options=None):
            return []

    orchestrator = GenerationOrchestrator(store, NoOutput(), FakeVideoGenerator(), PassthroughObjectStore())
    (asset_id,) = orchestrator.generate_batch([GenerationRequest(prompt="x")])
    await orchestrator.drain()

    assert store.get(asset_id).metadata["errorCode"] == "malformed_response"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_failed(store):
    class Exploding(FakeImageGenerator):
        async def generate(self, prompt, model, options=None):
            raise RuntimeError("socket closed")

    orchestrator = GenerationOrchestrator(store, Exploding(), FakeVideoGenerator(), PassthroughObjectStore())
    (asset_id,) = orchestrator.generate_batch([GenerationRequest(prompt="x")])
    await orchestrator.drain()

    asset = store.get(asset_id)
    assert asset.status == AssetStatus.FAILED
    assert asset.metadata["errorCode"] == "generation_error"


@pytest.mark.asyncio
async def test_audio_has_no_generator(store, orchestrator):
    (asset_id,) = orchestrator.generate_batch([GenerationRequest(prompt="voiceover", kind=AssetKind.AUDIO)])
    await orchestrator.drain()

    asset = store.get(asset_id)
    assert asset_id.startswith("aud-")
    assert asset.status == AssetStatus.FAILED
    assert asset.metadata["errorCode"] == "unsupported_kind"


@pytest.mark.asyncio
async def test_top_level_video_without_source_fails(store, orchestrator):
    (asset_id,) = orchestrator.generate_batch([GenerationRequest(prompt="pan", kind=AssetKind.VIDEO)])
    await orchestrator.drain()

    assert store.get(asset_id).metadata["errorCode"] == "missing_source"


@pytest.mark.asyncio
async def test_top_level_video_with_source(store, video_gen, orchestrator):
    (asset_id,) = orchestrator.generate_batch([
        GenerationRequest(prompt="pan", kind=AssetKind.VIDEO, source_image_url="https://cdn.test/src.png"),
    ])
    await orchestrator.drain()

    assert store.get(asset_id).status == AssetStatus.COMPLETED
    assert video_gen.calls[0]["source"] == "https://cdn.test/src.png"
    assert video_gen.calls[0]["options"]["prompt"] == "pan"


@pytest.mark.asyncio
async def test_variations(store, image_gen, orchestrator):
    ids = orchestrator.generate_variations("a lighthouse", 3, aspect_ratio="9:16")
    await orchestrator.drain()

    prompts = [store.get(i).prompt for i in ids]
    assert prompts[0] == "a lighthouse"
    assert prompts[1] == f"a lighthouse{VARIATION_SUFFIXES[1]}"
    assert [store.get(i).metadata["variationIndex"] for i in ids] == [0, 1, 2]
    assert image_gen.calls[0]["options"]["width"] == 720
    assert image_gen.calls[0]["options"]["height"] == 1280


def test_variation_prompts_cycle():
    prompts = variation_prompts("x", len(VARIATION_SUFFIXES) + 1)

    assert len(prompts) == len(VARIATION_SUFFIXES) + 1
    assert prompts[-1] == prompts[0] == "x"
    assert len(set(prompts[: len(VARIATION_SUFFIXES)])) == len(VARIATION_SUFFIXES)
