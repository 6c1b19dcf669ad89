"""Tests for caption burning: eligibility, linear backoff, bounded attempts."""

import json

import httpx
import pytest

from studio import metrics
from studio.pipeline.captions import CaptionBurner, clean_caption
from studio.pipeline.derivation import DerivationLinker
from studio.pipeline.models import (
    ATTEMPTED_SLIDE_CAPTION_KEY,
    CAPTIONS_REQUESTED_KEY,
    GROUP_KEY,
    HAS_SLIDE_CAPTION_KEY,
    SLIDE_NUMBER_KEY,
    SLIDE_TEXT_KEY,
    AssetKind,
    AssetStatus,
)
from studio.pipeline.orchestrator import GenerationOrchestrator
from studio.pipeline.storage import PassthroughObjectStore

from .conftest import FakeImageGenerator, FakeVideoGenerator


class CaptionService:
    """MockTransport handler that plays back a list of status codes."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 500
        if status == 200:
            return httpx.Response(200, json={"processedVideoUrl": "https://cdn.test/captioned.mp4"})
        return httpx.Response(status, text="ffmpeg exploded")


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _burner(store, service, **kwargs):
    return CaptionBurner(
        store,
        base_url="https://captions.test",
        transport=httpx.MockTransport(service),
        sleep=kwargs.pop("sleep", SleepRecorder()),
        **kwargs,
    )


def _completed_video(store, completed_image, captions=True, text="Be still\n\nand know"):
    parent = completed_image(metadata={
        GROUP_KEY: "g",
        SLIDE_NUMBER_KEY: 1,
        SLIDE_TEXT_KEY: text,
        CAPTIONS_REQUESTED_KEY: captions,
    })
    video = store.create_asset(AssetKind.VIDEO, "pan", {})
    store.attach_child(parent, video)
    token = store.start_job(video)
    store.complete_job(video, token, AssetStatus.COMPLETED, url="https://cdn.test/raw.mp4")
    return video


def test_clean_caption():
    assert clean_caption("  Be still\n\n\nand know \n") == "Be still and know"


@pytest.mark.asyncio
async def test_succeeds_on_third_attempt(store, completed_image):
    video = _completed_video(store, completed_image)
    service = CaptionService([500, 503, 200])
    sleep = SleepRecorder()
    burner = _burner(store, service, sleep=sleep, backoff_ms=3000)

    assert await burner.burn_caption(video) is True

    assert len(service.requests) == 3
    assert sleep.delays == [6.0, 9.0]
    asset = store.get(video)
    assert asset.url == "https://cdn.test/captioned.mp4"
    assert asset.status == AssetStatus.COMPLETED
    assert asset.metadata[HAS_SLIDE_CAPTION_KEY] is True
    assert asset.metadata["captionText"] == "Be still and know"
    assert metrics.get_counter("captions.burned") == 1


@pytest.mark.asyncio
async def test_captioned_video_is_not_burned_again(store, completed_image):
    video = _completed_video(store, completed_image)
    service = CaptionService([200, 200])
    burner = _burner(store, service)

    assert await burner.burn_caption(video) is True
    assert await burner.burn_caption(video) is False

    assert len(service.requests) == 1
    assert json.loads(service.requests[0].content)["videoUrl"] == "https://cdn.test/raw.mp4"
    assert store.get(video).url == "https://cdn.test/captioned.mp4"
    assert metrics.get_counter("captions.burned") == 1


@pytest.mark.asyncio
async def test_exhausted_video_can_be_retried_on_demand(store, completed_image):
    video = _completed_video(store, completed_image)
    service = CaptionService([500, 500, 500, 200])
    burner = _burner(store, service)

    assert await burner.burn_caption(video) is False
    assert await burner.burn_caption(video) is True

    assert len(service.requests) == 4
    assert store.get(video).metadata[HAS_SLIDE_CAPTION_KEY] is True


@pytest.mark.asyncio
async def test_request_body(store, completed_image):
    video = _completed_video(store, completed_image)
    service = CaptionService([200])

    await _burner(store, service).burn_caption(video)

    request = service.requests[0]
    assert request.url == "https://captions.test/api/video/add-caption"
    assert request.method == "POST"
    body = json.loads(request.content)
    assert body == {"videoUrl": "https://cdn.test/raw.mp4", "caption": "Be still and know", "style": "tiktok"}


@pytest.mark.asyncio
async def test_exhaustion_keeps_video_completed(store, completed_image):
    video = _completed_video(store, completed_image)
    service = CaptionService([500, 500, 500, 200])

    assert await _burner(store, service).burn_caption(video) is False

    assert len(service.requests) == 3
    asset = store.get(video)
    assert asset.status == AssetStatus.COMPLETED
    assert asset.url == "https://cdn.test/raw.mp4"
    assert asset.metadata[ATTEMPTED_SLIDE_CAPTION_KEY] is True
    assert asset.metadata[HAS_SLIDE_CAPTION_KEY] is False
    assert metrics.get_counter("captions.exhausted") == 1


@pytest.mark.asyncio
async def test_missing_processed_url_counts_as_failure(store, completed_image):
    video = _completed_video(store, completed_image)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"ok": True})

    burner = CaptionBurner(store, base_url="https://captions.test", transport=httpx.MockTransport(handler),
                           sleep=SleepRecorder(), max_attempts=2)

    assert await burner.burn_caption(video) is False
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_transport_errors_are_retried(store, completed_image):
    video = _completed_video(store, completed_image)
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"processedVideoUrl": "https://cdn.test/captioned.mp4"})

    burner = CaptionBurner(store, base_url="https://captions.test", transport=httpx.MockTransport(handler),
                           sleep=SleepRecorder())

    assert await burner.burn_caption(video) is True
    assert len(calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("captions,text", [(False, "Be still"), (True, "  \n ")])
async def test_ineligible_makes_no_request(store, completed_image, captions, text):
    video = _completed_video(store, completed_image, captions=captions, text=text)
    service = CaptionService([200])

    assert await _burner(store, service).burn_caption(video) is False
    assert service.requests == []
    assert HAS_SLIDE_CAPTION_KEY not in store.get(video).metadata


@pytest.mark.asyncio
async def test_top_level_video_is_ineligible(store):
    video = store.create_asset(AssetKind.VIDEO, "pan", {})
    service = CaptionService([200])

    assert await _burner(store, service).burn_caption(video) is False
    assert service.requests == []


@pytest.mark.asyncio
async def test_orchestrator_burns_after_video_completes(store, completed_image):
    service = CaptionService([200])
    burner = _burner(store, service)
    orchestrator = GenerationOrchestrator(
        store, FakeImageGenerator(), FakeVideoGenerator(), PassthroughObjectStore(), caption_burner=burner
    )
    parent = completed_image(metadata={
        GROUP_KEY: "g", SLIDE_NUMBER_KEY: 1, SLIDE_TEXT_KEY: "Hook", CAPTIONS_REQUESTED_KEY: True,
    })

    child = DerivationLinker(store, orchestrator).derive(parent, "pan")
    await orchestrator.drain()

    asset = store.get(child)
    assert asset.status == AssetStatus.COMPLETED
    assert asset.url == "https://cdn.test/captioned.mp4"
    assert asset.metadata[HAS_SLIDE_CAPTION_KEY] is True


@pytest.mark.asyncio
async def test_caption_failure_never_fails_video(store, completed_image):
    service = CaptionService([500, 500, 500])
    burner = _burner(store, service)
    orchestrator = GenerationOrchestrator(
        store, FakeImageGenerator(), FakeVideoGenerator(), PassthroughObjectStore(), caption_burner=burner
    )
    parent = completed_image(metadata={SLIDE_TEXT_KEY: "Hook", CAPTIONS_REQUESTED_KEY: True})

    child = DerivationLinker(store, orchestrator).derive(parent, "pan")
    await orchestrator.drain()

    asset = store.get(child)
    assert asset.status == AssetStatus.COMPLETED
    assert asset.metadata[ATTEMPTED_SLIDE_CAPTION_KEY] is True
    assert asset.metadata[HAS_SLIDE_CAPTION_KEY] is False
