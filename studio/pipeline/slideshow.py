"""
Slideshow groups: ordered sets of top-level assets sharing a group id.

A group is never stored on its own: it is whatever top-level assets carry
metadata.slideshowGroup == group_id, ordered by metadata.slideNumber. Every
operation here holds the store lock for its whole read-modify-write so slide
numbers stay a dense 1..k permutation.
"""

import re
import uuid
import logging
from typing import Optional

from .. import metrics
from ..presets import SLIDE_DIMENSIONS, get_preset, inserted_slide_prompt, slide_style_suffix
from .asset_store import AssetStore
from .errors import KindMismatch
from .generators import DEFAULT_IMAGE_MODEL
from .models import (
    CAPTIONS_REQUESTED_KEY,
    GROUP_KEY,
    IS_HOOK_KEY,
    SLIDE_NUMBER_KEY,
    SLIDE_TEXT_KEY,
    WORKFLOW_KEY,
    Asset,
    AssetKind,
    GenerationRequest,
    SlideSpec,
)
from .orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)

NEW_SLIDE_TEXT = "New slide\n\nAdd your content here"
DEFAULT_TOPIC_ITEMS = 5


def new_group_id() -> str:
    return f"slideshow-{uuid.uuid4().hex[:12]}"


def slide_count_for_topic(topic: str) -> int:
    """'5 prayers for peace' → 7 slides: the items plus a hook and a call to action."""
    match = re.search(r"\d+", topic)
    items = int(match.group()) if match else DEFAULT_TOPIC_ITEMS
    return items + 2


def _slide_options() -> dict:
    width, height = SLIDE_DIMENSIONS
    return {"width": width, "height": height, "num_outputs": 1}


class SlideshowGrouper:
    def __init__(
        self,
        store: AssetStore,
        orchestrator: GenerationOrchestrator,
        model: str = DEFAULT_IMAGE_MODEL,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self.model = model

    def members(self, group_id: str) -> list[Asset]:
        return self._store.group_members(group_id)

    def add_to_group(self, asset_id: str, group_id: str, slide_number: int) -> Asset:
        """Tag a top-level asset as slide `slide_number` of `group_id`. Uniqueness is on the caller."""
        with self._store.lock:
            if self._store.parent_id(asset_id) is not None:
                raise KindMismatch(f"{asset_id} is derived and cannot join a slideshow")
            previous_group = self._store.get(asset_id).group_id
            asset = self._store.update_metadata(
                asset_id,
                {GROUP_KEY: group_id, SLIDE_NUMBER_KEY: slide_number, IS_HOOK_KEY: slide_number == 1},
            )
            if previous_group and previous_group != group_id:
                remaining = [a.id for a in self._store.group_members(previous_group)]
                self._store.renumber_group(previous_group, remaining)
            return asset

    def reorder(self, group_id: str, from_index: int, to_index: int) -> list[Asset]:
        """
        Move the slide at `from_index` to `to_index` (0-based, in slide order), then
        renumber the whole group 1..k in the new order. Empty groups are a no-op.
        """
        with self._store.lock:
            ordered = [a.id for a in self._store.group_members(group_id)]
            if not ordered:
                return []
            if not 0 <= from_index < len(ordered):
                raise IndexError(f"from_index {from_index} outside group of {len(ordered)}")
            to_index = max(0, min(to_index, len(ordered) - 1))

            moved = ordered.pop(from_index)
            ordered.insert(to_index, moved)
            members = self._store.renumber_group(group_id, ordered)

        logger.info(f"[{group_id}] slide {from_index + 1} moved to {to_index + 1}")
        return members

    def insert_at(
        self,
        group_id: str,
        position: int,
        spec: Optional[SlideSpec] = None,
        workflow: Optional[str] = None,
    ) -> str:
        """
        Insert a new slide after slide `position` (0 = before the first slide).

        Every member numbered above `position` shifts up by one and the new
        slide takes number position + 1. Positions past the end append. The
        group keeps the workflow it was created with; `workflow` only applies
        to groups that never recorded one. The new slide is submitted for
        generation straight away.
        """
        with self._store.lock:
            members = self._store.group_members(group_id)
            position = max(0, min(position, len(members)))
            template = members[0].metadata if members else {}
            style = template.get("style")
            workflow = template.get(WORKFLOW_KEY) or workflow

            if spec is not None:
                prompt, suffix, text = spec.image_prompt, slide_style_suffix(workflow, style), spec.text
            else:
                prompt, suffix, text = inserted_slide_prompt(workflow, style), "", NEW_SLIDE_TEXT

            metadata = {
                "aspectRatio": "9:16",
                "model": self.model,
                GROUP_KEY: group_id,
                SLIDE_NUMBER_KEY: position + 1,
                IS_HOOK_KEY: position == 0,
                SLIDE_TEXT_KEY: text,
                "theme": template.get("theme"),
                WORKFLOW_KEY: workflow,
                "style": style,
                "slideshowTopic": template.get("slideshowTopic", "slideshow"),
                CAPTIONS_REQUESTED_KEY: bool(template.get(CAPTIONS_REQUESTED_KEY, False)),
            }
            new_id = self._store.create_asset(AssetKind.IMAGE, prompt, metadata)

            ordered = [a.id for a in members]
            ordered.insert(position, new_id)
            self._store.renumber_group(group_id, ordered)

        request = GenerationRequest(
            prompt=prompt,
            model=self.model,
            aspect_ratio="9:16",
            options=_slide_options(),
            prompt_suffix=suffix,
        )
        self._orchestrator.submit(new_id, request)
        metrics.inc_counter("requests.insert_slide")
        logger.info(f"[{group_id}] inserted slide {position + 1}: {new_id}")
        return new_id

    def create_slideshow(
        self,
        topic: str,
        slides: list[SlideSpec],
        theme: Optional[str] = None,
        style: Optional[str] = None,
        workflow: Optional[str] = None,
        captions: bool = True,
        model: Optional[str] = None,
    ) -> tuple[str, list[str]]:
        """Create a new group with one image per slide and submit them all as one batch."""
        group_id = new_group_id()
        model = model or self.model
        workflow = get_preset(workflow)["id"]
        suffix = slide_style_suffix(workflow, style)

        requests = [
            GenerationRequest(
                prompt=slide.image_prompt,
                model=model,
                aspect_ratio="9:16",
                options=_slide_options(),
                prompt_suffix=suffix,
                metadata={
                    GROUP_KEY: group_id,
                    SLIDE_NUMBER_KEY: i + 1,
                    IS_HOOK_KEY: i == 0,
                    SLIDE_TEXT_KEY: slide.text,
                    "theme": theme,
                    WORKFLOW_KEY: workflow,
                    "style": style,
                    "slideshowTopic": topic,
                    CAPTIONS_REQUESTED_KEY: captions,
                },
            )
            for i, slide in enumerate(slides)
        ]
        asset_ids = self._orchestrator.generate_batch(requests)
        metrics.inc_counter("requests.slideshow")
        logger.info(f"[{group_id}] slideshow created: {len(asset_ids)} slides for '{topic[:60]}'")
        return group_id, asset_ids
