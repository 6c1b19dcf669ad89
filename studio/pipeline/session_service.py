"""
Production session persistence: Supabase `production_sessions` table.

Row shape: {id, name, assets[], settings{}, status, created_at, updated_at}

The store snapshot is written here through SessionSync (debounced); this
module only knows how to talk to the table.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from supabase import create_client, Client

from .errors import NotFound

logger = logging.getLogger(__name__)

TABLE = "production_sessions"


class SessionGateway(Protocol):
    async def create(self, name: Optional[str] = None) -> dict: ...
    async def get(self, session_id: str) -> dict: ...
    async def update(self, session_id: str, updates: dict[str, Any]) -> dict: ...
    async def list_recent(self, limit: int = 20) -> list[dict]: ...
    async def archive(self, session_id: str) -> None: ...
    async def delete(self, session_id: str) -> dict: ...


# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_session_name() -> str:
    return f"Session {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"


class SupabaseSessionGateway:
    """
    Supabase calls are blocking; each one runs in a worker thread so the
    event loop keeps serving generation jobs meanwhile.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = _get_service_client()
        return self._client

    async def create(self, name: Optional[str] = None) -> dict:
        row = {"name": name or default_session_name(), "assets": [], "settings": {}}
        result = await asyncio.to_thread(
            lambda: self.sb.table(TABLE).insert([row]).execute()
        )
        session = result.data[0]
        logger.info(f"Session created: {session['id']} ({session['name']})")
        return session

    async def get(self, session_id: str) -> dict:
        result = await asyncio.to_thread(
            lambda: self.sb.table(TABLE).select("*").eq("id", session_id).execute()
        )
        if not result.data:
            raise NotFound(session_id, "Session")
        session = result.data[0]
        logger.info(f"Session loaded: {session_id} ({len(session.get('assets') or [])} assets)")
        return session

    async def update(self, session_id: str, updates: dict[str, Any]) -> dict:
        allowed = {k: v for k, v in updates.items() if k in ("assets", "settings", "name")}
        allowed["updated_at"] = _now_iso()
        result = await asyncio.to_thread(
            lambda: self.sb.table(TABLE).update(allowed).eq("id", session_id).execute()
        )
        if not result.data:
            raise NotFound(session_id, "Session")
        return result.data[0]

    async def list_recent(self, limit: int = 20) -> list[dict]:
        result = await asyncio.to_thread(
            lambda: (
                self.sb.table(TABLE)
                .select("*")
                .eq("status", "active")
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )
        )
        return result.data or []

    async def archive(self, session_id: str) -> None:
        await asyncio.to_thread(
            lambda: self.sb.table(TABLE).update({"status": "archived"}).eq("id", session_id).execute()
        )
        logger.info(f"Session {session_id} archived")

    async def delete(self, session_id: str) -> dict:
        result = await asyncio.to_thread(
            lambda: self.sb.table(TABLE).delete().eq("id", session_id).execute()
        )
        if not result.data:
            raise NotFound(session_id, "Session")
        logger.info(f"Session {session_id} deleted")
        return result.data[0]
