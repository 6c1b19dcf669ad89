"""
FastAPI routes for the production studio.

Asset Endpoints:
  POST   /assets/batch             Submit a batch of generation requests
  POST   /assets/variations        N image variations of one prompt
  GET    /assets                   Current asset tree
  GET    /assets/{id}              One asset
  PATCH  /assets/{id}/prompt       Edit prompt while still pending
  DELETE /assets/{id}              Delete (cascades to derived videos)
  POST   /assets/{id}/derive       Video from a completed image
  POST   /assets/videos            Videos for many selected images
  POST   /assets/{id}/reroll       Replace a derived video with a new prompt
  POST   /assets/{id}/caption      Burn the slide caption on demand

Slideshow Endpoints:
  POST /slideshows                  Create a group from slide specs
  GET  /slideshows/{group}          Members in slide order
  POST /slideshows/{group}/reorder  Move one slide
  POST /slideshows/{group}/slides   Insert a slide

Session Endpoints:
  GET    /session/snapshot         Snapshot of the open session
  POST   /session/restore          Restore into an empty store
  PATCH  /session/settings         Merge session settings
  POST   /sessions                 Create + open a new session
  GET    /sessions                 Recent sessions
  POST   /sessions/{id}/load       Open an existing session
  POST   /sessions/{id}/archive    Hide from the recent list
  DELETE /sessions/{id}            Delete a session
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException

from .errors import (
    AlreadyInitialized,
    InvalidTransition,
    KindMismatch,
    NotFound,
    SourceNotReady,
    StudioError,
)
from .models import (
    Asset,
    BatchRequest,
    BatchResponse,
    DeriveManyRequest,
    DeriveRequest,
    InsertSlideRequest,
    PromptEditRequest,
    ReorderRequest,
    RerollRequest,
    SessionCreateRequest,
    SessionSnapshot,
    SlideshowCreateRequest,
    SlideshowResponse,
    SlideSpec,
    VariationsRequest,
)
from ..presets import video_motion_prompt
from .studio import ProductionStudio

logger = logging.getLogger(__name__)

# Singleton studio, created by the app lifespan (or lazily on first request)
_studio: Optional[ProductionStudio] = None


def set_studio(studio: Optional[ProductionStudio]) -> None:
    global _studio
    _studio = studio


def get_studio() -> ProductionStudio:
    global _studio
    if _studio is None:
        _studio = ProductionStudio.from_env()
    return _studio


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidTransition, KindMismatch, SourceNotReady, AlreadyInitialized)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ValueError, IndexError)):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"Unhandled studio error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Asset Router
# ═════════════════════════════════════════════════════════════════════════════

asset_router = APIRouter(prefix="/assets", tags=["assets"])


@asset_router.post("/batch", response_model=BatchResponse)
async def generate_batch(request: BatchRequest, studio: ProductionStudio = Depends(get_studio)):
    """Create one pending asset per request; generation runs in the background."""
    asset_ids = studio.orchestrator.generate_batch(request.requests)
    return BatchResponse(asset_ids=asset_ids)


@asset_router.post("/variations", response_model=BatchResponse)
async def generate_variations(request: VariationsRequest, studio: ProductionStudio = Depends(get_studio)):
    asset_ids = studio.orchestrator.generate_variations(
        request.prompt, request.count, model=request.model, aspect_ratio=request.aspect_ratio
    )
    return BatchResponse(asset_ids=asset_ids)


@asset_router.get("", response_model=list[Asset])
async def list_assets(studio: ProductionStudio = Depends(get_studio)):
    return studio.store.list_assets()


@asset_router.post("/videos")
async def derive_videos(request: DeriveManyRequest, studio: ProductionStudio = Depends(get_studio)):
    """
    Derive a video for each selected image with the workflow's motion prompt.
    Images that are missing or not completed are skipped, not rejected.
    """
    try:
        derived = studio.linker.derive_many(request.image_ids, workflow=request.workflow, model=request.model)
    except ValueError as e:
        raise _http_error(e)
    return {"derived": derived, "skipped": [i for i in request.image_ids if i not in derived]}


@asset_router.get("/{asset_id}", response_model=Asset)
async def get_asset(asset_id: str, studio: ProductionStudio = Depends(get_studio)):
    try:
        return studio.store.get(asset_id)
    except StudioError as e:
        raise _http_error(e)


@asset_router.patch("/{asset_id}/prompt", response_model=Asset)
async def edit_prompt(asset_id: str, request: PromptEditRequest, studio: ProductionStudio = Depends(get_studio)):
    """Only pending assets can be edited; the job reads the prompt when it starts."""
    try:
        return studio.store.edit_prompt(asset_id, request.prompt)
    except StudioError as e:
        raise _http_error(e)


@asset_router.delete("/{asset_id}")
async def delete_asset(asset_id: str, studio: ProductionStudio = Depends(get_studio)):
    studio.store.delete(asset_id)
    return {"status": "ok", "asset_id": asset_id}


@asset_router.post("/{asset_id}/derive")
async def derive_video(asset_id: str, request: DeriveRequest, studio: ProductionStudio = Depends(get_studio)):
    """
    Errors:
      - 404: Unknown source image
      - 409: Source is not a completed image
    """
    try:
        child_id = studio.linker.derive(
            asset_id,
            request.prompt or video_motion_prompt(None),
            options=request.options or None,
            model=request.model,
        )
        return {"status": "ok", "asset_id": child_id, "source_id": asset_id}
    except StudioError as e:
        raise _http_error(e)


@asset_router.post("/{asset_id}/reroll")
async def reroll_video(asset_id: str, request: RerollRequest, studio: ProductionStudio = Depends(get_studio)):
    try:
        new_id = studio.linker.reroll(asset_id, request.prompt)
        return {"status": "ok", "asset_id": new_id, "replaced": asset_id}
    except StudioError as e:
        raise _http_error(e)


@asset_router.post("/{asset_id}/caption")
async def burn_caption(asset_id: str, studio: ProductionStudio = Depends(get_studio)):
    """Runs inline: returns once the burn has succeeded or exhausted its attempts."""
    try:
        studio.store.get(asset_id)
    except StudioError as e:
        raise _http_error(e)
    burned = await studio.captions.burn_caption(asset_id)
    return {"status": "ok" if burned else "skipped", "asset": studio.store.get(asset_id)}


# ═════════════════════════════════════════════════════════════════════════════
# Slideshow Router
# ═════════════════════════════════════════════════════════════════════════════

slideshow_router = APIRouter(prefix="/slideshows", tags=["slideshows"])


@slideshow_router.post("", response_model=SlideshowResponse)
async def create_slideshow(request: SlideshowCreateRequest, studio: ProductionStudio = Depends(get_studio)):
    try:
        group_id, _ = studio.slideshows.create_slideshow(
            request.topic,
            request.slides,
            theme=request.theme,
            style=request.style,
            workflow=request.workflow or studio.store.settings.get("workflow") or "slideshow",
            captions=request.captions,
            model=request.model,
        )
    except ValueError as e:
        raise _http_error(e)
    return SlideshowResponse(group_id=group_id, assets=studio.slideshows.members(group_id))


@slideshow_router.get("/{group_id}", response_model=SlideshowResponse)
async def get_slideshow(group_id: str, studio: ProductionStudio = Depends(get_studio)):
    members = studio.slideshows.members(group_id)
    if not members:
        raise HTTPException(status_code=404, detail=f"Slideshow {group_id} not found")
    return SlideshowResponse(group_id=group_id, assets=members)


@slideshow_router.post("/{group_id}/reorder", response_model=SlideshowResponse)
async def reorder_slides(group_id: str, request: ReorderRequest, studio: ProductionStudio = Depends(get_studio)):
    try:
        members = studio.slideshows.reorder(group_id, request.from_index, request.to_index)
    except (StudioError, IndexError, ValueError) as e:
        raise _http_error(e)
    return SlideshowResponse(group_id=group_id, assets=members)


@slideshow_router.post("/{group_id}/slides", response_model=SlideshowResponse)
async def insert_slide(group_id: str, request: InsertSlideRequest, studio: ProductionStudio = Depends(get_studio)):
    """Insert after slide `position` (0 = new first slide). Missing prompt → workflow default."""
    spec = None
    if request.prompt:
        spec = SlideSpec(text=request.text or "", image_prompt=request.prompt)
    workflow = studio.store.settings.get("workflow")
    try:
        studio.slideshows.insert_at(group_id, request.position, spec=spec, workflow=workflow)
    except (StudioError, ValueError) as e:
        raise _http_error(e)
    return SlideshowResponse(group_id=group_id, assets=studio.slideshows.members(group_id))


# ═════════════════════════════════════════════════════════════════════════════
# Session Router: open session snapshot + persisted sessions
# ═════════════════════════════════════════════════════════════════════════════

session_router = APIRouter(tags=["sessions"])


@session_router.get("/session/snapshot")
async def get_snapshot(studio: ProductionStudio = Depends(get_studio)):
    snapshot = studio.snapshot()
    return {
        "session_id": studio.session_id,
        "revision": snapshot.revision,
        **snapshot.to_session_payload(),
    }


@session_router.post("/session/restore")
async def restore_snapshot(snapshot: SessionSnapshot, studio: ProductionStudio = Depends(get_studio)):
    """
    Errors:
      - 400: Snapshot breaks an asset invariant (url/status, derivation shape, duplicate ids)
      - 409: Store already holds state (restore only into an empty session)
    """
    try:
        studio.restore(snapshot)
    except (StudioError, ValueError) as e:
        raise _http_error(e)
    return {"status": "ok", "assets": len(studio.store.list_assets())}


@session_router.patch("/session/settings")
async def update_settings(settings: dict[str, Any], studio: ProductionStudio = Depends(get_studio)):
    """Merge free-form settings (workflow, default style, ...) into the open session."""
    studio.store.update_settings(settings)
    return studio.store.settings


def _require_gateway(studio: ProductionStudio):
    if studio.gateway is None:
        raise HTTPException(status_code=503, detail="Session persistence is not configured")
    return studio.gateway


@session_router.post("/sessions")
async def create_session(request: SessionCreateRequest, studio: ProductionStudio = Depends(get_studio)):
    _require_gateway(studio)
    try:
        session = await studio.open_session(name=request.name)
    except Exception as e:
        logger.error(f"Session create failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return {"id": session["id"], "name": session.get("name")}


@session_router.get("/sessions")
async def list_sessions(limit: int = 20, studio: ProductionStudio = Depends(get_studio)):
    gateway = _require_gateway(studio)
    sessions = await gateway.list_recent(limit=limit)
    return [
        {
            "id": s["id"],
            "name": s.get("name"),
            "assets": len(s.get("assets") or []),
            "updated_at": s.get("updated_at"),
        }
        for s in sessions
    ]


@session_router.post("/sessions/{session_id}/load")
async def load_session(session_id: str, studio: ProductionStudio = Depends(get_studio)):
    _require_gateway(studio)
    try:
        session = await studio.open_session(session_id)
    except (StudioError, ValueError) as e:
        raise _http_error(e)
    return {"id": session["id"], "name": session.get("name"), "assets": studio.store.list_assets()}


@session_router.post("/sessions/{session_id}/archive")
async def archive_session(session_id: str, studio: ProductionStudio = Depends(get_studio)):
    """Hide a session from the recent list without deleting its assets."""
    gateway = _require_gateway(studio)
    if session_id == studio.session_id:
        raise HTTPException(status_code=409, detail="Cannot archive the open session")
    await gateway.archive(session_id)
    return {"status": "ok", "session_id": session_id}


@session_router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, studio: ProductionStudio = Depends(get_studio)):
    gateway = _require_gateway(studio)
    if session_id == studio.session_id:
        raise HTTPException(status_code=409, detail="Cannot delete the open session")
    try:
        await gateway.delete(session_id)
    except StudioError as e:
        raise _http_error(e)
    return {"status": "ok", "session_id": session_id}
