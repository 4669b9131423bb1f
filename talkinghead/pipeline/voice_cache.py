"""
Voice preview cache.

Maps a narrator voice to a previously synthesized sample so repeated
previews cost nothing. Entries live in an injected key/value store:

  voice_preview_{version}_{voice_id} → {"audioUrl": ..., "timestamp": <epoch ms>}

Expiry is lazy: an entry older than the TTL is removed when it is read.
Bumping the version orphans old entries instead of misreading them.
"""

import os
import json
import time
import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol

from pydantic import ValidationError

from .models import VoiceCacheEntry

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

CACHE_KEY_PREFIX = "voice_preview_"
CACHE_VERSION = os.getenv("VOICE_CACHE_VERSION", "v1")
CACHE_TTL_SECONDS = 7 * 24 * 60 * 60  # one week
VOICE_CACHE_PATH = os.getenv("VOICE_CACHE_PATH", str(Path.home() / ".talkinghead" / "voice_cache.json"))
REDIS_URL = os.getenv("REDIS_URL", "")


class VoiceCacheStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


# ── Stores ────────────────────────────────────────────────────────────────────

class MemoryVoiceCacheStore:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileVoiceCacheStore:
    """
    JSON file on the local device. Survives restarts.

    Writes replace the whole file atomically (write temp + rename), so a
    crash mid-write leaves the previous contents intact.
    """

    def __init__(self, path: str = VOICE_CACHE_PATH):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Voice cache file unreadable, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)


class RedisVoiceCacheStore:
    """Shared store for several workers. Expiry is still enforced on read."""

    def __init__(self, redis_client):
        self._redis = redis_client

    def get(self, key: str) -> Optional[str]:
        value = self._redis.get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def set(self, key: str, value: str) -> None:
        self._redis.set(key, value)

    def delete(self, key: str) -> None:
        self._redis.delete(key)


def build_voice_cache_store() -> VoiceCacheStore:
    """Redis when REDIS_URL is set and reachable, else the local JSON file."""
    if REDIS_URL:
        import redis

        client = redis.from_url(REDIS_URL, decode_responses=False)
        try:
            client.ping()
            logger.info(f"Voice cache using Redis: {REDIS_URL[:30]}...")
            return RedisVoiceCacheStore(client)
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e}, falling back to file cache")
    logger.info(f"Voice cache using file: {VOICE_CACHE_PATH}")
    return FileVoiceCacheStore(VOICE_CACHE_PATH)


# ── Cache ─────────────────────────────────────────────────────────────────────

class VoicePreviewCache:
    """
    Usage:
        cache = VoicePreviewCache(MemoryVoiceCacheStore())
        cache.put("nova", "https://.../nova.mp3")
        cache.get("nova")   # → URL until a week has passed
    """

    def __init__(
        self,
        store: VoiceCacheStore,
        clock: Callable[[], float] = time.time,
        ttl_seconds: int = CACHE_TTL_SECONDS,
        version: str = CACHE_VERSION,
    ):
        self.store = store
        self._clock = clock
        self.ttl_ms = ttl_seconds * 1000
        self.version = version

    def key(self, voice_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{self.version}_{voice_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def get(self, voice_id: str) -> Optional[str]:
        """Cached audio URL, or None. Expired or corrupt entries are removed."""
        key = self.key(voice_id)
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning(f"Failed to read voice cache for {voice_id}: {e}")
            return None
        if raw is None:
            return None

        try:
            entry = VoiceCacheEntry.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Corrupt voice cache entry for {voice_id}, evicting: {e.error_count()} error(s)")
            self.evict(voice_id)
            return None

        if self._now_ms() - entry.timestamp > self.ttl_ms:
            logger.info(f"Voice cache entry for {voice_id} expired, evicting")
            self.evict(voice_id)
            return None

        return entry.audio_url

    def put(self, voice_id: str, audio_url: str) -> None:
        entry = VoiceCacheEntry(audio_url=audio_url, timestamp=self._now_ms())
        try:
            self.store.set(self.key(voice_id), entry.model_dump_json(by_alias=True))
        except Exception as e:
            logger.warning(f"Failed to cache voice preview for {voice_id}: {e}")

    def evict(self, voice_id: str) -> None:
        try:
            self.store.delete(self.key(voice_id))
        except Exception as e:
            logger.warning(f"Failed to evict voice cache entry for {voice_id}: {e}")

    def cached_voices(self, voice_ids: list[str]) -> set[str]:
        return {v for v in voice_ids if self.get(v) is not None}
