"""
ProductionStudio: one working session's store plus the services around it.

Usage:
    studio = ProductionStudio.from_env()
    await studio.open_session()              # or open_session(existing_id)

    ids = studio.orchestrator.generate_variations("sunrise over hills", 4)
    video_id = studio.linker.derive(ids[0], "slow pan")
    group_id, slides = studio.slideshows.create_slideshow(topic, slides)

    await studio.close()
"""

import logging
from typing import Optional

from .asset_store import AssetStore
from .captions import CaptionBurner
from .derivation import DerivationLinker
from .generators import ImageGenerator, VideoGenerator
from .models import SessionSnapshot
from .orchestrator import GENERATION_CONCURRENCY, GenerationOrchestrator
from .session_service import SessionGateway, SupabaseSessionGateway
from .session_sync import SessionSync
from .slideshow import SlideshowGrouper
from .storage import ObjectStore, object_store_from_env

logger = logging.getLogger(__name__)


class ProductionStudio:
    def __init__(
        self,
        image_generator,
        video_generator,
        object_store: ObjectStore,
        gateway: Optional[SessionGateway] = None,
        concurrency: int = GENERATION_CONCURRENCY,
        caption_burner_factory=CaptionBurner,
        debounce_seconds: Optional[float] = None,
    ):
        self._image_generator = image_generator
        self._video_generator = video_generator
        self._object_store = object_store
        self._gateway = gateway
        self._concurrency = concurrency
        self._caption_burner_factory = caption_burner_factory
        self._debounce_seconds = debounce_seconds

        self.session_id: Optional[str] = None
        self.session_name: Optional[str] = None
        self.sync: Optional[SessionSync] = None
        self._bind(AssetStore())

    @classmethod
    def from_env(cls) -> "ProductionStudio":
        return cls(
            image_generator=ImageGenerator(),
            video_generator=VideoGenerator(),
            object_store=object_store_from_env(),
            gateway=SupabaseSessionGateway(),
        )

    def _bind(self, store: AssetStore) -> None:
        self.store = store
        self.captions = self._caption_burner_factory(store)
        self.orchestrator = GenerationOrchestrator(
            store,
            self._image_generator,
            self._video_generator,
            self._object_store,
            caption_burner=self.captions,
            concurrency=self._concurrency,
        )
        self.linker = DerivationLinker(store, self.orchestrator)
        self.slideshows = SlideshowGrouper(store, self.orchestrator)

    @property
    def gateway(self) -> Optional[SessionGateway]:
        return self._gateway

    # ── Sessions ─────────────────────────────────────────────────────────

    async def open_session(self, session_id: Optional[str] = None, name: Optional[str] = None) -> dict:
        """
        Load (or create) a session into a fresh store and start debounced sync.
        The previous session is flushed and closed only once the new one has
        been fetched and restored, so a missing or malformed session leaves it open.
        """
        if self._gateway is None:
            raise RuntimeError("No session gateway configured")

        session = await self._gateway.get(session_id) if session_id else await self._gateway.create(name)
        store = AssetStore()
        store.restore(SessionSnapshot.from_session(session))

        await self.close()
        self._bind(store)

        self.session_id = session["id"]
        self.session_name = session.get("name")
        kwargs = {} if self._debounce_seconds is None else {"debounce_seconds": self._debounce_seconds}
        self.sync = SessionSync(store, self._gateway, self.session_id, **kwargs)
        self.sync.start()
        logger.info(f"Session {self.session_id} open ({len(store.list_assets())} assets)")
        return session

    def restore(self, snapshot: SessionSnapshot) -> None:
        self.store.restore(snapshot)

    def snapshot(self) -> SessionSnapshot:
        return self.store.snapshot()

    async def close(self) -> None:
        """Let in-flight jobs settle, then write the final snapshot."""
        await self.orchestrator.drain()
        if self.sync is not None:
            await self.sync.close()
            self.sync = None
