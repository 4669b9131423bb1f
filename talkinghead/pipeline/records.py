"""
Persistence of finished training videos.

One append per successful run into the `training_videos` table. Writes go
through the Supabase service role.
"""

import os
import asyncio
import logging
from typing import Optional, Protocol

from supabase import create_client, Client

from .errors import PersistenceFailed
from .models import PersistedVideoRecord

logger = logging.getLogger(__name__)

TABLE_NAME = "training_videos"


class VideoRecordStore(Protocol):
    async def append(self, record: PersistedVideoRecord) -> None: ...


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


def _record_to_row(record: PersistedVideoRecord) -> dict:
    return {
        "user_id": record.user_id,
        "title": record.title,
        "description": record.description,
        "video_url": record.video_url,
        "voice_id": record.voice,
        "background": record.background,
        "lipsync_applied": record.lipsync_applied,
        "created_at": record.created_at.isoformat(),
    }


class SupabaseVideoRecordStore:
    def __init__(self, client: Optional[Client] = None, table: str = TABLE_NAME):
        self._client = client
        self.table = table

    async def append(self, record: PersistedVideoRecord) -> None:
        """
        Insert the record.

        Raises:
            PersistenceFailed: client not configured or the insert failed.
        """
        row = _record_to_row(record)

        def _insert():
            sb = self._client or _get_service_client()
            sb.table(self.table).insert(row).execute()

        try:
            await asyncio.to_thread(_insert)
        except Exception as e:
            raise PersistenceFailed(f"Failed to save video record for user {record.user_id}: {e}") from e

        logger.info(f"Saved training video for user {record.user_id}: {record.video_url}")
