"""
Caption burn: overlays a slide's caption text onto its finished video.

POST {IMAGE_GEN_URL}/api/video/add-caption
  {videoUrl, caption, style: "tiktok"} → 200 {processedVideoUrl}

Bounded retry with linear backoff (backoff_ms * attempt before each retry).
Purely cosmetic: the video stays completed whatever happens here.
"""

import os
import re
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .. import metrics
from .asset_store import AssetStore
from .errors import CaptionBurnExhausted, NotFound, StudioError
from .generators import IMAGE_GEN_URL
from .models import (
    ATTEMPTED_SLIDE_CAPTION_KEY,
    CAPTIONS_REQUESTED_KEY,
    HAS_SLIDE_CAPTION_KEY,
    SLIDE_TEXT_KEY,
    AssetKind,
    AssetStatus,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

CAPTION_MAX_ATTEMPTS = int(os.getenv("CAPTION_MAX_ATTEMPTS", "3"))
CAPTION_BACKOFF_MS = int(os.getenv("CAPTION_BACKOFF_MS", "3000"))
CAPTION_TIMEOUT_SECONDS = float(os.getenv("CAPTION_TIMEOUT_SECONDS", "120"))
CAPTION_STYLE = "tiktok"


def clean_caption(text: str) -> str:
    """Collapse newlines (single or runs) into single spaces and trim."""
    return re.sub(r"\n+", " ", text).strip()


class CaptionBurner:
    def __init__(
        self,
        store: AssetStore,
        base_url: str = IMAGE_GEN_URL,
        max_attempts: int = CAPTION_MAX_ATTEMPTS,
        backoff_ms: int = CAPTION_BACKOFF_MS,
        timeout: float = CAPTION_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def caption_for(self, video_id: str) -> Optional[str]:
        """Caption text to burn onto this video, or None if it isn't eligible."""
        with self._store.lock:
            if not self._store.exists(video_id):
                return None
            video = self._store.get(video_id)
            parent_id = self._store.parent_id(video_id)
            if video.kind != AssetKind.VIDEO or parent_id is None:
                return None
            # The url already carries the caption; burning again would overlay it twice
            if video.metadata.get(HAS_SLIDE_CAPTION_KEY) is True:
                return None
            parent = self._store.get(parent_id)

        if parent.metadata.get(CAPTIONS_REQUESTED_KEY) is not True:
            return None
        text = clean_caption(str(parent.metadata.get(SLIDE_TEXT_KEY) or ""))
        return text or None

    async def burn_caption(self, video_id: str) -> bool:
        """
        Burn the parent slide's caption onto a completed video.

        Returns True on success. Ineligible videos, including ones already
        captioned, return False without making any request. After exhausting
        all attempts the video is flagged attemptedSlideCaption=True /
        hasSlideCaption=False and stays completed.
        """
        caption = self.caption_for(video_id)
        if caption is None:
            return False

        video = self._store.get(video_id)
        if video.status != AssetStatus.COMPLETED:
            logger.warning(f"[{video_id}] caption burn skipped: video is {video.status.value}")
            return False

        endpoint = f"{self.base_url}/api/video/add-caption"
        body = {"videoUrl": video.url, "caption": caption, "style": CAPTION_STYLE}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                if attempt > 1:
                    logger.info(f"[{video_id}] caption retry {attempt}/{self.max_attempts}")
                    await self._sleep(self.backoff_ms * attempt / 1000)

                processed_url = await self._attempt(client, endpoint, body, video_id, attempt)
                if processed_url:
                    metrics.inc_counter("captions.burned")
                    logger.info(f"[{video_id}] caption burned on attempt {attempt}: \"{caption[:60]}\"")
                    return self._record(video_id, caption, processed_url)

        err = CaptionBurnExhausted(video_id, self.max_attempts)
        logger.error(str(err))
        metrics.inc_counter("captions.exhausted")
        metrics.record_error("caption_burn", "exhausted", str(err), video_id)
        self._record(video_id, caption, None)
        return False

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        body: dict,
        video_id: str,
        attempt: int,
    ) -> Optional[str]:
        try:
            resp = await client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            logger.error(f"[{video_id}] caption burn error (attempt {attempt}): {e}")
            return None

        if not resp.is_success:
            logger.error(f"[{video_id}] caption burn failed (attempt {attempt}): {resp.status_code} {resp.text[:300]}")
            return None

        try:
            processed = resp.json().get("processedVideoUrl")
        except (ValueError, AttributeError):
            processed = None
        if not processed:
            logger.error(f"[{video_id}] caption burn returned no processedVideoUrl (attempt {attempt})")
            return None
        return processed

    def _record(self, video_id: str, caption: str, processed_url: Optional[str]) -> bool:
        patch = {
            ATTEMPTED_SLIDE_CAPTION_KEY: True,
            HAS_SLIDE_CAPTION_KEY: processed_url is not None,
            "captionText": caption,
        }
        try:
            self._store.update_metadata(video_id, patch, url=processed_url)
        except NotFound:
            # Video was deleted or rerolled while we were burning
            logger.info(f"[{video_id}] caption result discarded: asset gone")
            return False
        except StudioError as e:
            logger.warning(f"[{video_id}] caption result not applied: {e}")
            return False
        return processed_url is not None
