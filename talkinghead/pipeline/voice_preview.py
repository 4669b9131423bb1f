"""
Narrator voice previews.

preview(voice) plays the cached sample when there is one and only calls
generate-voice on a miss. A cached sample that no longer plays is evicted
and regenerated once.

preload_all() walks the catalog in order and fills the cache so later
previews are instant. One failing voice never stops the rest. Concurrent
preloads are serialized, so a voice is never synthesized twice at once.

Cache stores may do blocking file or Redis I/O, so they run in a worker
thread.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Protocol

import httpx

from ..presets import VOICE_CATALOG, get_sample_text, get_voice
from .errors import PlaybackError, PreviewFailed
from .models import AudioHandle, PreloadProgress
from .storage import decode_data_uri
from .voice import VoiceClient
from .voice_cache import VoicePreviewCache

logger = logging.getLogger(__name__)

REACHABILITY_TIMEOUT = 10


class AudioPlayer(Protocol):
    async def play(self, voice_id: str, audio_url: str, cached: bool) -> AudioHandle: ...


class ReachabilityPlayer:
    """
    Server-side stand-in for playback: confirms the asset can actually be
    fetched (or decoded, for data: URIs) and hands back a handle.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = REACHABILITY_TIMEOUT):
        self._client = client
        self.timeout = timeout

    async def _reach(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        response = await client.head(url, follow_redirects=True)
        if response.status_code == 405:
            response = await client.get(url, follow_redirects=True)
        return response

    async def play(self, voice_id: str, audio_url: str, cached: bool) -> AudioHandle:
        if audio_url.startswith("data:"):
            try:
                audio_bytes, _ = decode_data_uri(audio_url)
            except ValueError as e:
                raise PlaybackError(f"Audio for {voice_id} is not decodable: {e}") from e
            if not audio_bytes:
                raise PlaybackError(f"Audio for {voice_id} is empty")
            return AudioHandle(voice_id=voice_id, audio_url=audio_url, cached=cached)

        try:
            if self._client is not None:
                response = await self._reach(self._client, audio_url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._reach(client, audio_url)
        except httpx.HTTPError as e:
            raise PlaybackError(f"Audio for {voice_id} unreachable: {e}") from e

        if response.status_code >= 400:
            raise PlaybackError(f"Audio for {voice_id} returned HTTP {response.status_code}")
        return AudioHandle(voice_id=voice_id, audio_url=audio_url, cached=cached)


class VoicePreviewService:
    def __init__(
        self,
        cache: VoicePreviewCache,
        voice: Optional[VoiceClient] = None,
        player: Optional[AudioPlayer] = None,
        catalog: Optional[list[str]] = None,
    ):
        self.cache = cache
        self.voice = voice or VoiceClient()
        self.player = player or ReachabilityPlayer()
        self.catalog = list(catalog) if catalog is not None else list(VOICE_CATALOG)
        self._preload_lock = asyncio.Lock()

    @property
    def preloading(self) -> bool:
        return self._preload_lock.locked()

    async def _synthesize_sample(self, voice_id: str) -> str:
        audio = await self.voice.synthesize(get_sample_text(voice_id), voice_id)
        await asyncio.to_thread(self.cache.put, voice_id, audio.url)
        return audio.url

    async def preview(self, voice_id: str) -> AudioHandle:
        """
        Play the preview sample for a voice.

        Raises:
            ValueError:    voice is not in the catalog.
            PreviewFailed: synthesis failed or fresh audio would not play.
        """
        get_voice(voice_id)

        cached_url = await asyncio.to_thread(self.cache.get, voice_id)
        if cached_url:
            try:
                return await self.player.play(voice_id, cached_url, cached=True)
            except PlaybackError as e:
                logger.warning(f"Cached audio for {voice_id} failed, regenerating: {e}")
                await asyncio.to_thread(self.cache.evict, voice_id)

        try:
            audio_url = await self._synthesize_sample(voice_id)
        except Exception as e:
            logger.error(f"Voice preview synthesis failed for {voice_id}: {e}")
            raise PreviewFailed(f"Failed to preview voice {voice_id}") from e

        try:
            return await self.player.play(voice_id, audio_url, cached=False)
        except PlaybackError as e:
            raise PreviewFailed(f"Failed to play audio for {voice_id}") from e

    async def preload_all(self) -> AsyncIterator[PreloadProgress]:
        """
        Fill the cache for every catalog voice, one at a time.

        Yields one PreloadProgress for the already-cached baseline and one
        after each remaining voice. `processed` counts failures too, so the
        last event is always 100%.

        A second caller waits for a preload in progress and then reports
        against the cache it left behind.
        """
        async with self._preload_lock:
            total = len(self.catalog)
            cached_voices = await asyncio.to_thread(self.cache.cached_voices, self.catalog)
            to_preload = [v for v in self.catalog if v not in cached_voices]
            already_cached = total - len(to_preload)
            cached = already_cached
            failed: list[str] = []

            yield PreloadProgress(processed=already_cached, cached=cached, total=total)

            if not to_preload:
                logger.info("All voices already cached")
                return

            for completed, voice_id in enumerate(to_preload, start=1):
                try:
                    await self._synthesize_sample(voice_id)
                    cached += 1
                except Exception as e:
                    logger.warning(f"Failed to preload voice {voice_id}: {e}")
                    failed.append(voice_id)

                yield PreloadProgress(
                    processed=already_cached + completed,
                    cached=cached,
                    total=total,
                    failed=list(failed),
                )

            logger.info(f"Voice preload finished: {cached}/{total} cached, {len(failed)} failed")
