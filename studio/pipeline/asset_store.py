"""
AssetStore: canonical mutable state for one working session.

Every mutation goes through this class and runs under a single re-entrant
lock, so completions arriving from concurrent generation jobs cannot
interleave. Cross-asset operations (group renumbering, child replacement)
take the same lock for their whole duration; callers that need several
store calls to be atomic hold ``store.lock`` themselves.

Reads return deep copies; nothing outside the store ever holds a live Asset.
"""

import logging
import threading
import uuid
from typing import Any, Callable, Iterable, Optional

from .errors import AlreadyInitialized, InvalidTransition, KindMismatch, NotFound
from .models import (
    ALLOWED_TRANSITIONS,
    GROUP_KEY,
    IS_HOOK_KEY,
    SLIDE_NUMBER_KEY,
    Asset,
    AssetKind,
    AssetStatus,
    SessionSnapshot,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

Listener = Callable[[int], None]


def new_asset_id(kind: AssetKind) -> str:
    prefix = {AssetKind.IMAGE: "img", AssetKind.VIDEO: "vid", AssetKind.AUDIO: "aud"}[kind]
    return f"{prefix}-{uuid.uuid4().hex}"


class AssetStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._top: list[Asset] = []
        self._index: dict[str, Asset] = {}
        self._parents: dict[str, str] = {}  # child id → parent id
        self._jobs: dict[str, str] = {}  # asset id → token of the job allowed to settle it
        self._settings: dict[str, Any] = {}
        self._revision = 0
        self._initialized = False
        self._listeners: list[Listener] = []

    # ── Locking / change feed ────────────────────────────────────────────

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def subscribe(self, listener: Listener) -> None:
        """Register a callback invoked with the new revision after every mutation."""
        with self._lock:
            self._listeners.append(listener)

    def _touch(self) -> None:
        self._revision += 1
        self._initialized = True
        for listener in list(self._listeners):
            try:
                listener(self._revision)
            except Exception as e:
                logger.error(f"Store listener failed: {e}", exc_info=True)

    def _require(self, asset_id: str) -> Asset:
        asset = self._index.get(asset_id)
        if asset is None:
            raise NotFound(asset_id)
        return asset

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, asset_id: str) -> Asset:
        with self._lock:
            return self._require(asset_id).model_copy(deep=True)

    def exists(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._index

    def parent_id(self, asset_id: str) -> Optional[str]:
        with self._lock:
            self._require(asset_id)
            return self._parents.get(asset_id)

    def list_assets(self) -> list[Asset]:
        """Top-level assets in insertion order, children nested."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._top]

    @property
    def settings(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._settings)

    # ── Creation / lifecycle ─────────────────────────────────────────────

    def create_asset(
        self,
        kind: AssetKind,
        prompt: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Append a new pending top-level asset and return its id."""
        with self._lock:
            asset = Asset(id=new_asset_id(kind), kind=kind, prompt=prompt, metadata=dict(metadata or {}))
            self._top.append(asset)
            self._index[asset.id] = asset
            self._touch()
            return asset.id

    def transition(
        self,
        asset_id: str,
        status: AssetStatus,
        url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Asset:
        """Validate and apply a status move plus url/metadata patch, atomically."""
        with self._lock:
            asset = self._require(asset_id)
            self._apply_transition(asset, status, url, metadata)
            self._touch()
            return asset.model_copy(deep=True)

    def _apply_transition(
        self,
        asset: Asset,
        status: AssetStatus,
        url: Optional[str],
        metadata: Optional[dict[str, Any]],
    ) -> None:
        status = AssetStatus(status)
        if status not in ALLOWED_TRANSITIONS[asset.status]:
            raise InvalidTransition(asset.id, asset.status.value, status.value)

        # url is non-empty iff completed
        if status == AssetStatus.COMPLETED:
            if not url:
                raise InvalidTransition(asset.id, asset.status.value, f"{status.value} without url")
            new_url = url
        else:
            new_url = ""

        asset.status = status
        asset.url = new_url
        if metadata:
            asset.metadata.update(metadata)
        if status in TERMINAL_STATUSES:
            self._jobs.pop(asset.id, None)

    def start_job(self, asset_id: str) -> str:
        """Move a pending asset to generating and hand back the token that may settle it."""
        with self._lock:
            asset = self._require(asset_id)
            self._apply_transition(asset, AssetStatus.GENERATING, None, None)
            token = uuid.uuid4().hex
            self._jobs[asset_id] = token
            self._touch()
            return token

    def complete_job(
        self,
        asset_id: str,
        token: str,
        status: AssetStatus,
        url: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Settle a job's asset. Returns False (and changes nothing) when the result
        is stale: the asset was deleted or rerolled, or another job owns it now.
        """
        with self._lock:
            asset = self._index.get(asset_id)
            if asset is None or self._jobs.get(asset_id) != token:
                return False
            if asset.status != AssetStatus.GENERATING:
                return False
            self._apply_transition(asset, status, url, metadata)
            self._touch()
            return True

    def update_metadata(
        self,
        asset_id: str,
        patch: dict[str, Any],
        url: Optional[str] = None,
    ) -> Asset:
        """Patch metadata without touching status. A url may only be swapped on a completed asset."""
        with self._lock:
            asset = self._require(asset_id)
            if url is not None:
                if asset.status != AssetStatus.COMPLETED or not url:
                    raise InvalidTransition(asset_id, asset.status.value, "url replacement")
                asset.url = url
            asset.metadata.update(patch)
            self._touch()
            return asset.model_copy(deep=True)

    def edit_prompt(self, asset_id: str, prompt: str) -> Asset:
        with self._lock:
            asset = self._require(asset_id)
            if asset.status != AssetStatus.PENDING:
                raise InvalidTransition(asset_id, asset.status.value, "prompt edit")
            asset.prompt = prompt
            self._touch()
            return asset.model_copy(deep=True)

    def update_settings(self, patch: dict[str, Any]) -> None:
        with self._lock:
            self._settings.update(patch)
            self._touch()

    # ── Parent / child ───────────────────────────────────────────────────

    def attach_child(self, parent_id: str, child_id: str, index: Optional[int] = None) -> None:
        with self._lock:
            parent = self._require(parent_id)
            child = self._require(child_id)
            if parent.kind != AssetKind.IMAGE or child.kind != AssetKind.VIDEO:
                raise KindMismatch(
                    f"Cannot attach {child.kind.value} {child_id} to {parent.kind.value} {parent_id}"
                )
            if parent_id in self._parents:
                raise KindMismatch(f"{parent_id} is itself derived and cannot own children")

            self._detach(child)
            if index is None:
                parent.children.append(child)
            else:
                parent.children.insert(index, child)
            self._parents[child_id] = parent_id
            self._touch()

    def _detach(self, asset: Asset) -> None:
        """Unlink an asset from wherever it currently lives (top-level list or a parent)."""
        old_parent_id = self._parents.pop(asset.id, None)
        if old_parent_id is not None:
            old_parent = self._index[old_parent_id]
            old_parent.children = [c for c in old_parent.children if c.id != asset.id]
            return
        self._top = [a for a in self._top if a.id != asset.id]
        if asset.group_id:
            self._compact_group(asset.group_id)

    def replace_child(
        self,
        child_id: str,
        prompt: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Retire a child and put a fresh pending one in the same slot of the same parent.
        Any in-flight job for the old id is orphaned; its result will be discarded.
        """
        with self._lock:
            old = self._require(child_id)
            parent_id = self._parents.get(child_id)
            if parent_id is None:
                raise KindMismatch(f"{child_id} is not a derived asset")
            parent = self._index[parent_id]
            slot = next(i for i, c in enumerate(parent.children) if c.id == child_id)

            new = Asset(
                id=new_asset_id(old.kind),
                kind=old.kind,
                prompt=prompt,
                metadata=dict(metadata if metadata is not None else old.metadata),
            )
            parent.children[slot] = new
            del self._index[child_id]
            del self._parents[child_id]
            self._jobs.pop(child_id, None)
            self._index[new.id] = new
            self._parents[new.id] = parent_id
            self._touch()
            logger.info(f"[{parent_id}] child {child_id} rerolled → {new.id}")
            return new.id

    def delete(self, asset_id: str) -> None:
        """Remove an asset and, for a parent, all of its children. Missing ids are a no-op."""
        with self._lock:
            asset = self._index.get(asset_id)
            if asset is None:
                return
            self._detach(asset)
            for child in asset.children:
                self._index.pop(child.id, None)
                self._parents.pop(child.id, None)
                self._jobs.pop(child.id, None)
            del self._index[asset_id]
            self._jobs.pop(asset_id, None)
            self._touch()

    # ── Slideshow groups ─────────────────────────────────────────────────

    def _members(self, group_id: str) -> list[Asset]:
        members = [a for a in self._top if a.metadata.get(GROUP_KEY) == group_id]
        members.sort(key=lambda a: a.slide_number)
        return members

    def group_members(self, group_id: str) -> list[Asset]:
        """Top-level assets of a group, ordered by slide number."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._members(group_id)]

    def group_ids(self) -> list[str]:
        with self._lock:
            seen: dict[str, None] = {}
            for a in self._top:
                if a.group_id:
                    seen.setdefault(a.group_id, None)
            return list(seen)

    def renumber_group(self, group_id: str, ordered_ids: Iterable[str]) -> list[Asset]:
        """Assign slide numbers 1..k following ``ordered_ids``, which must be exactly the group."""
        with self._lock:
            ordered_ids = list(ordered_ids)
            members = {a.id: a for a in self._members(group_id)}
            if sorted(ordered_ids) != sorted(members):
                raise ValueError(f"Ordering for group {group_id} does not match its members")
            self._number(members[i] for i in ordered_ids)
            self._touch()
            return self.group_members(group_id)

    def _compact_group(self, group_id: str) -> None:
        self._number(self._members(group_id))

    @staticmethod
    def _number(assets: Iterable[Asset]) -> None:
        for n, asset in enumerate(assets, start=1):
            asset.metadata[SLIDE_NUMBER_KEY] = n
            asset.metadata[IS_HOOK_KEY] = n == 1

    # ── Snapshot / restore ───────────────────────────────────────────────

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                assets=tuple(a.model_copy(deep=True) for a in self._top),
                settings=dict(self._settings),
                revision=self._revision,
            )

    def restore(self, snapshot: SessionSnapshot) -> None:
        """
        Replace all state with a loaded snapshot. Only legal on a fresh store.

        Raises ValueError, leaving the store untouched, when the snapshot breaks
        an invariant the store keeps for its own assets.
        """
        with self._lock:
            if self._initialized:
                raise AlreadyInitialized("Store already holds session state; restore must come first")
            self._check_snapshot(snapshot)

            top: list[Asset] = []
            index: dict[str, Asset] = {}
            parents: dict[str, str] = {}
            for asset in snapshot.assets:
                asset = asset.model_copy(deep=True)
                top.append(asset)
                index[asset.id] = asset
                for child in asset.children:
                    index[child.id] = child
                    parents[child.id] = asset.id

            self._top = top
            self._index = index
            self._parents = parents
            self._jobs = {}
            self._settings = dict(snapshot.settings)
            self._revision = snapshot.revision
            self._initialized = True
            logger.info(f"Restored session snapshot: {len(top)} top-level assets, {len(index)} total")

    @staticmethod
    def _check_snapshot(snapshot: SessionSnapshot) -> None:
        seen: set[str] = set()

        def check(asset: Asset) -> None:
            if asset.id in seen:
                raise ValueError(f"Snapshot holds asset {asset.id} twice")
            seen.add(asset.id)
            # url is non-empty iff completed
            if (asset.status == AssetStatus.COMPLETED) != bool(asset.url):
                raise ValueError(f"Snapshot asset {asset.id} is {asset.status.value} with url {asset.url!r}")

        for asset in snapshot.assets:
            check(asset)
            if asset.children and asset.kind != AssetKind.IMAGE:
                raise ValueError(f"Snapshot {asset.kind.value} {asset.id} cannot own children")
            for child in asset.children:
                check(child)
                if child.kind != AssetKind.VIDEO:
                    raise ValueError(f"Snapshot child {child.id} is {child.kind.value}, only videos are derived")
                if child.children:
                    raise ValueError(f"Snapshot child {child.id} has children of its own")
