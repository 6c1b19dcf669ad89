"""
GenerationOrchestrator: concurrent fan-out of generation jobs.

For every request:
  1. create a pending asset in the store (ids returned right away, in order)
  2. in a background task: pending → generating, call the generator,
     re-host the output in the object store
  3. settle the asset as completed (url set) or failed (errorCode in metadata)

Jobs in a batch are independent: each one catches its own errors, so a
failure never cancels or delays a sibling. A bounded semaphore caps how many
jobs talk to the generator at once. Finished videos whose source slide asked
for captions get a separate caption-burn follow-up task.
"""

import os
import time
import asyncio
import logging
from typing import Optional, Protocol

from .. import metrics
from ..presets import dimensions_for
from .asset_store import AssetStore
from .captions import CaptionBurner
from .errors import GenerationFailed, InvalidTransition, NotFound
from .generators import DEFAULT_IMAGE_MODEL, DEFAULT_VIDEO_MODEL
from .models import (
    ERROR_CODE_KEY,
    ERROR_KEY,
    AssetKind,
    AssetStatus,
    GenerationRequest,
    JobOutcome,
)
from .storage import ObjectStore

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GENERATION_CONCURRENCY = int(os.getenv("GENERATION_CONCURRENCY", "4"))

# Suffix per variation index; cycles once the table runs out
VARIATION_SUFFIXES = (
    "",  # first one uses the exact prompt
    ", different angle",
    ", alternative composition",
    ", creative interpretation",
    ", unique perspective",
    ", artistic approach",
    ", fresh take",
    ", innovative style",
    ", dynamic view",
    ", original vision",
)


def variation_prompts(base_prompt: str, count: int) -> list[str]:
    """Deterministic, diverse prompts for `count` variations of one base prompt."""
    return [
        f"{base_prompt}{VARIATION_SUFFIXES[i % len(VARIATION_SUFFIXES)]}"
        for i in range(count)
    ]


class ImageGeneratorLike(Protocol):
    async def generate(self, prompt: str, model: str, options: Optional[dict] = None) -> list[str]:
        ...


class VideoGeneratorLike(Protocol):
    async def generate(self, source_image_url: str, model: str, options: Optional[dict] = None) -> str:
        ...


class GenerationOrchestrator:
    """
    Usage:
        orchestrator = GenerationOrchestrator(store, image_gen, video_gen, object_store)
        ids = orchestrator.generate_batch([GenerationRequest(prompt="sunrise")])
        ...
        outcomes = await orchestrator.drain()
    """

    def __init__(
        self,
        store: AssetStore,
        image_generator: ImageGeneratorLike,
        video_generator: VideoGeneratorLike,
        object_store: ObjectStore,
        caption_burner: Optional[CaptionBurner] = None,
        concurrency: int = GENERATION_CONCURRENCY,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._store = store
        self._image_generator = image_generator
        self._video_generator = video_generator
        self._object_store = object_store
        self._caption_burner = caption_burner
        self._semaphore = asyncio.Semaphore(concurrency)
        self._requests: dict[str, GenerationRequest] = {}  # live asset id → request it was launched with
        self._tasks: set[asyncio.Task] = set()
        self.concurrency = concurrency

    # ── Submission ───────────────────────────────────────────────────────

    def generate_batch(self, requests: list[GenerationRequest]) -> list[str]:
        """
        Create one pending asset per request and launch all jobs.

        Returns immediately; ids line up positionally with `requests`.
        Must be called from inside a running event loop.
        """
        metrics.inc_counter("requests.generate_batch")
        with self._store.lock:
            asset_ids = [
                self._store.create_asset(req.kind, req.prompt, self._initial_metadata(req))
                for req in requests
            ]
        for asset_id, req in zip(asset_ids, requests):
            self.submit(asset_id, req)
        logger.info(f"Batch submitted: {len(asset_ids)} asset(s)")
        return asset_ids

    def generate_variations(
        self,
        base_prompt: str,
        count: int,
        model: Optional[str] = None,
        aspect_ratio: str = "9:16",
    ) -> list[str]:
        width, height = dimensions_for(aspect_ratio)
        requests = [
            GenerationRequest(
                prompt=prompt,
                model=model,
                aspect_ratio=aspect_ratio,
                options={"width": width, "height": height, "num_outputs": 1},
                metadata={"variationIndex": i},
            )
            for i, prompt in enumerate(variation_prompts(base_prompt, count))
        ]
        return self.generate_batch(requests)

    def submit(self, asset_id: str, request: GenerationRequest) -> asyncio.Task:
        """Launch the job for an asset that already exists in the store (pending)."""
        self._prune_requests()
        self._requests[asset_id] = request
        return self._spawn(self._run(asset_id, request), name=f"generate:{asset_id}")

    def request_for(self, asset_id: str) -> Optional[GenerationRequest]:
        return self._requests.get(asset_id)

    def _prune_requests(self) -> None:
        # Deleted and rerolled ids never come back
        for asset_id in [a for a in self._requests if not self._store.exists(a)]:
            del self._requests[asset_id]

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _initial_metadata(request: GenerationRequest) -> dict:
        default_model = DEFAULT_VIDEO_MODEL if request.kind == AssetKind.VIDEO else DEFAULT_IMAGE_MODEL
        return {
            "aspectRatio": request.aspect_ratio,
            "model": request.model or default_model,
            **request.metadata,
        }

    # ── Job ──────────────────────────────────────────────────────────────

    async def _run(self, asset_id: str, request: GenerationRequest) -> JobOutcome:
        async with self._semaphore:
            try:
                token = self._store.start_job(asset_id)
            except (NotFound, InvalidTransition) as e:
                # Deleted or rerolled before we got a slot
                logger.info(f"[{asset_id}] job skipped: {e}")
                self._prune_requests()
                return JobOutcome(asset_id=asset_id, status=AssetStatus.PENDING, discarded=True)

            metrics.add_gauge("generation.in_flight", 1)
            started = time.monotonic()
            try:
                outcome = await self._generate(asset_id, request)
            finally:
                metrics.add_gauge("generation.in_flight", -1)
                metrics.record_latency(f"generate.{request.kind.value}", (time.monotonic() - started) * 1000)

        applied = self._settle(asset_id, token, outcome)
        if not applied:
            logger.info(f"[{asset_id}] stale result discarded")
            self._prune_requests()
            return outcome.model_copy(update={"discarded": True})

        if outcome.status == AssetStatus.COMPLETED and request.kind == AssetKind.VIDEO:
            self._maybe_burn_caption(asset_id)
        return outcome

    async def _generate(self, asset_id: str, request: GenerationRequest) -> JobOutcome:
        try:
            # Prompt is read at launch; edits are only possible while pending
            asset = self._store.get(asset_id)
            model = asset.metadata.get("model") or request.model
            prompt = f"{asset.prompt}{request.prompt_suffix}"

            if request.kind == AssetKind.IMAGE:
                urls = await self._image_generator.generate(prompt, model, request.options)
                if not urls:
                    raise GenerationFailed("Generator returned no URLs", code="malformed_response")
                source_url = urls[0]
            elif request.kind == AssetKind.VIDEO:
                image_url = request.source_image_url or self._parent_url(asset_id)
                if not image_url:
                    raise GenerationFailed("No source image for video", code="missing_source")
                options = {"prompt": prompt, **request.options}
                source_url = await self._video_generator.generate(image_url, model, options)
                if not source_url:
                    raise GenerationFailed("Generator returned no URL", code="malformed_response")
            else:
                raise GenerationFailed(f"No generator for {request.kind.value}", code="unsupported_kind")

            upload = await self._object_store.upload_from_url(
                source_url,
                request.kind,
                {
                    "prompt": prompt,
                    "model": model,
                    "aspect_ratio": request.aspect_ratio,
                    "metadata": asset.metadata,
                },
            )
        except GenerationFailed as e:
            return self._failed(asset_id, e.code, str(e))
        except NotFound:
            # Asset vanished mid-flight; settle() will discard
            return self._failed(asset_id, "asset_gone", "Asset deleted during generation")
        except Exception as e:
            logger.error(f"[{asset_id}] generation crashed: {e}", exc_info=True)
            return self._failed(asset_id, "generation_error", str(e))

        return JobOutcome(
            asset_id=asset_id,
            status=AssetStatus.COMPLETED,
            url=upload.public_url,
        )

    def _failed(self, asset_id: str, code: str, message: str) -> JobOutcome:
        logger.warning(f"[{asset_id}] generation failed ({code}): {message}")
        return JobOutcome(
            asset_id=asset_id,
            status=AssetStatus.FAILED,
            error_code=code,
            error=message[:300],
        )

    def _parent_url(self, asset_id: str) -> str:
        with self._store.lock:
            parent_id = self._store.parent_id(asset_id)
            if parent_id is None:
                return ""
            return self._store.get(parent_id).url

    def _settle(self, asset_id: str, token: str, outcome: JobOutcome) -> bool:
        if outcome.status == AssetStatus.COMPLETED:
            applied = self._store.complete_job(asset_id, token, AssetStatus.COMPLETED, url=outcome.url)
        else:
            applied = self._store.complete_job(
                asset_id,
                token,
                AssetStatus.FAILED,
                metadata={ERROR_CODE_KEY: outcome.error_code, ERROR_KEY: outcome.error},
            )
        if applied:
            if outcome.status == AssetStatus.COMPLETED:
                metrics.inc_counter("assets.completed")
                logger.info(f"[{asset_id}] completed → {outcome.url}")
            else:
                metrics.inc_counter("assets.failed")
                metrics.inc_counter("errors.generation")
                metrics.record_error("generation", outcome.error_code or "", outcome.error or "", asset_id)
        return applied

    def _maybe_burn_caption(self, video_id: str):
        if self._caption_burner is None or self._caption_burner.caption_for(video_id) is None:
            return
        self._spawn(self._caption_burner.burn_caption(video_id), name=f"caption:{video_id}")

    # ── Waiting ──────────────────────────────────────────────────────────

    async def drain(self) -> list:
        """Wait until every job and follow-up (including ones spawned meanwhile) has settled."""
        results = []
        seen: set[asyncio.Task] = set()
        while True:
            pending = [t for t in self._tasks if t not in seen]
            if not pending:
                break
            seen.update(pending)
            results.extend(await asyncio.gather(*pending, return_exceptions=True))
        return results

