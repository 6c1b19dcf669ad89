"""
Derivation: videos generated from a finished image, owned by that image.

Derivation only decides the parent/child relationship; execution goes through
the orchestrator exactly like any top-level request.
"""

import logging
from typing import Any, Optional

from .. import metrics
from ..presets import video_motion_prompt
from .asset_store import AssetStore
from .errors import NotFound, SourceNotReady
from .generators import DEFAULT_VIDEO_MODEL, video_options_for
from .models import (
    GROUP_KEY,
    SLIDE_NUMBER_KEY,
    SLIDE_TEXT_KEY,
    AssetKind,
    AssetStatus,
    GenerationRequest,
)
from .orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


class DerivationLinker:
    def __init__(
        self,
        store: AssetStore,
        orchestrator: GenerationOrchestrator,
        video_model: str = DEFAULT_VIDEO_MODEL,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self.video_model = video_model

    def derive(
        self,
        source_image_id: str,
        prompt: str,
        options: Optional[dict[str, Any]] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Create a video child of a completed image and submit it for generation.

        Raises NotFound for an unknown id and SourceNotReady unless the source
        is a completed image.
        """
        model = model or self.video_model
        with self._store.lock:
            source = self._store.get(source_image_id)
            if source.kind != AssetKind.IMAGE or source.status != AssetStatus.COMPLETED:
                raise SourceNotReady(
                    f"{source_image_id} is a {source.status.value} {source.kind.value}; "
                    f"videos derive only from completed images"
                )

            aspect_ratio = source.metadata.get("aspectRatio") or "9:16"
            metadata: dict[str, Any] = {
                "sourceImage": source.url,
                "model": model,
                "aspectRatio": aspect_ratio,
            }
            if source.metadata.get(GROUP_KEY):
                # Children are not group members; keep the slide facts under other keys
                metadata.update({
                    "isFromSlideshow": True,
                    "sourceSlideNumber": source.metadata.get(SLIDE_NUMBER_KEY),
                    "captionText": source.metadata.get(SLIDE_TEXT_KEY),
                })

            child_id = self._store.create_asset(AssetKind.VIDEO, prompt, metadata)
            self._store.attach_child(source_image_id, child_id)

        request = GenerationRequest(
            prompt=prompt,
            kind=AssetKind.VIDEO,
            model=model,
            aspect_ratio=aspect_ratio,
            options=options if options is not None else video_options_for(model, aspect_ratio),
        )
        self._orchestrator.submit(child_id, request)
        metrics.inc_counter("requests.derive")
        logger.info(f"[{source_image_id}] derived video {child_id}")
        return child_id

    def derive_many(
        self,
        image_ids: list[str],
        workflow: Optional[str] = None,
        model: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Derive one video per image using the workflow's motion prompt.
        Images that are missing or not ready are skipped. Returns image id → video id.
        """
        prompt = video_motion_prompt(workflow)
        derived = {}
        for image_id in image_ids:
            try:
                derived[image_id] = self.derive(image_id, prompt, model=model)
            except (NotFound, SourceNotReady) as e:
                logger.warning(f"[{image_id}] skipped for video: {e}")
        return derived

    def reroll(self, child_id: str, new_prompt: str) -> str:
        """
        Replace a derived video in place with a fresh one using `new_prompt`.

        The old id is retired; if its generation is still running the result
        is discarded when it lands. Returns the new child id.
        """
        previous = self._orchestrator.request_for(child_id)
        with self._store.lock:
            old = self._store.get(child_id)
            metadata = {**old.metadata, "isReroll": True, "rerolledFrom": child_id}
            for key in ("errorCode", "error", "hasSlideCaption", "attemptedSlideCaption"):
                metadata.pop(key, None)
            new_id = self._store.replace_child(child_id, new_prompt, metadata)

        if previous is not None:
            request = previous.model_copy(update={"prompt": new_prompt})
        else:
            model = metadata.get("model") or self.video_model
            aspect_ratio = metadata.get("aspectRatio") or "9:16"
            request = GenerationRequest(
                prompt=new_prompt,
                kind=old.kind,
                model=model,
                aspect_ratio=aspect_ratio,
                options=video_options_for(model, aspect_ratio),
            )
        self._orchestrator.submit(new_id, request)
        metrics.inc_counter("requests.reroll")
        return new_id
