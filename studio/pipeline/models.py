"""
Pydantic models and enums for the production pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Asset Kind / Status ──────────────────────────────────────────────────────

class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class AssetStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[AssetStatus, frozenset[AssetStatus]] = {
    AssetStatus.PENDING: frozenset({AssetStatus.GENERATING}),
    AssetStatus.GENERATING: frozenset({AssetStatus.COMPLETED, AssetStatus.FAILED}),
    AssetStatus.COMPLETED: frozenset(),
    AssetStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({AssetStatus.COMPLETED, AssetStatus.FAILED})


# ── Metadata keys the pipeline reads ─────────────────────────────────────────

GROUP_KEY = "slideshowGroup"
SLIDE_NUMBER_KEY = "slideNumber"
IS_HOOK_KEY = "isHook"
SLIDE_TEXT_KEY = "slideText"
CAPTIONS_REQUESTED_KEY = "captionsRequested"
HAS_SLIDE_CAPTION_KEY = "hasSlideCaption"
ATTEMPTED_SLIDE_CAPTION_KEY = "attemptedSlideCaption"
WORKFLOW_KEY = "workflow"
ERROR_CODE_KEY = "errorCode"
ERROR_KEY = "error"


# ── Asset ────────────────────────────────────────────────────────────────────

class Asset(BaseModel):
    """One unit of generated media. Serialised with the session's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: AssetKind = Field(alias="type")
    url: str = ""
    prompt: str = ""
    status: AssetStatus = AssetStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    metadata: dict[str, Any] = Field(default_factory=dict)
    children: list["Asset"] = Field(default_factory=list, alias="childAssets")

    @property
    def group_id(self) -> Optional[str]:
        return self.metadata.get(GROUP_KEY)

    @property
    def slide_number(self) -> int:
        return int(self.metadata.get(SLIDE_NUMBER_KEY) or 0)


class SessionSnapshot(BaseModel):
    """Top-level assets plus free-form settings; the unit exchanged with the session store."""

    model_config = ConfigDict(frozen=True)

    assets: tuple[Asset, ...] = ()
    settings: dict[str, Any] = Field(default_factory=dict)
    revision: int = 0

    def to_session_payload(self) -> dict:
        """Shape expected by SessionGateway.update(id, {assets, settings})."""
        return {
            "assets": [a.model_dump(mode="json", by_alias=True) for a in self.assets],
            "settings": dict(self.settings),
        }

    @classmethod
    def from_session(cls, session: dict) -> "SessionSnapshot":
        """Parse a stored session row (assets[] / settings) back into a snapshot."""
        assets = tuple(Asset.model_validate(a) for a in (session.get("assets") or []))
        return cls(assets=assets, settings=session.get("settings") or {})


# ── Generation Requests ──────────────────────────────────────────────────────

class GenerationRequest(BaseModel):
    prompt: str
    kind: AssetKind = AssetKind.IMAGE
    model: Optional[str] = None
    aspect_ratio: str = "9:16"
    options: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    prompt_suffix: str = Field("", description="Appended to the prompt sent to the generator only")
    source_image_url: Optional[str] = Field(None, description="Video only; defaults to the parent image url")


class SlideSpec(BaseModel):
    text: str
    image_prompt: str


class JobOutcome(BaseModel):
    """Typed result of one generation job."""
    asset_id: str
    status: AssetStatus
    url: str = ""
    error_code: Optional[str] = None
    error: Optional[str] = None
    discarded: bool = False


class UploadResult(BaseModel):
    id: str
    public_url: str


# ── API Request Models ───────────────────────────────────────────────────────

class BatchRequest(BaseModel):
    requests: list[GenerationRequest] = Field(..., min_length=1)


class VariationsRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    count: int = Field(4, ge=1, le=40)
    model: Optional[str] = None
    aspect_ratio: str = "9:16"


class DeriveRequest(BaseModel):
    prompt: Optional[str] = None
    model: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)


class DeriveManyRequest(BaseModel):
    image_ids: list[str] = Field(..., min_length=1)
    workflow: Optional[str] = None
    model: Optional[str] = None


class RerollRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


class PromptEditRequest(BaseModel):
    prompt: str = Field(..., min_length=1)


class SlideshowCreateRequest(BaseModel):
    topic: str
    slides: list[SlideSpec] = Field(..., min_length=1)
    theme: Optional[str] = None
    style: Optional[str] = None
    workflow: Optional[str] = None  # falls back to the session setting, then "slideshow"
    captions: bool = True
    model: Optional[str] = None


class ReorderRequest(BaseModel):
    from_index: int = Field(..., ge=0)
    to_index: int = Field(..., ge=0)


class InsertSlideRequest(BaseModel):
    position: int = Field(..., ge=0)
    prompt: Optional[str] = None
    text: Optional[str] = None


class SessionCreateRequest(BaseModel):
    name: Optional[str] = None


class BatchResponse(BaseModel):
    asset_ids: list[str]


class SlideshowResponse(BaseModel):
    group_id: str
    assets: list[Asset]
