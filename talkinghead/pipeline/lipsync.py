"""
Lip synchronization via the `lip-sync-service` backend function.

Optional enhancement: callers run it through the DegradationManager.
"""

import time
import logging
from typing import Optional

from .errors import CapabilityError, CapabilityUnavailable
from .transport import FunctionsTransport, get_transport

logger = logging.getLogger(__name__)

FUNCTION_NAME = "lip-sync-service"
DEFAULT_QUALITY = "balanced"
NOT_CONFIGURED_MARKER = "not configured"


def _is_not_configured(detail: Optional[str]) -> bool:
    return bool(detail) and NOT_CONFIGURED_MARKER in detail.lower()


class LipSyncClient:
    def __init__(self, transport: Optional[FunctionsTransport] = None):
        self._transport = transport

    @property
    def transport(self) -> FunctionsTransport:
        return self._transport or get_transport()

    async def sync(
        self,
        video_url: str,
        audio_url: str,
        user_id: str,
        project_id: Optional[str] = None,
        quality: str = DEFAULT_QUALITY,
        face_enhance: bool = True,
    ) -> str:
        """
        Re-time the mouth in `video_url` to `audio_url`.

        Returns:
            URL of the lip-synced video.

        Raises:
            CapabilityUnavailable: the service reports it is not configured.
            CapabilityError:       any other failure or a missing output URL.
        """
        project_id = project_id or f"training_{user_id}_{int(time.time() * 1000)}"
        payload = {
            "projectId": project_id,
            "videoUrl": video_url,
            "audioUrl": audio_url,
            "userId": user_id,
            "quality": quality,
            "faceEnhance": face_enhance,
        }

        try:
            data = await self.transport.invoke(FUNCTION_NAME, payload)
        except CapabilityError as e:
            if _is_not_configured(e.detail):
                raise CapabilityUnavailable("Lip sync service not configured", detail=e.detail) from e
            raise

        if data.get("success") and data.get("outputVideoUrl"):
            logger.info(f"Lip sync complete for {project_id}")
            return data["outputVideoUrl"]

        error = data.get("error")
        if _is_not_configured(error):
            raise CapabilityUnavailable("Lip sync service not configured", detail=error)
        raise CapabilityError("Lip sync returned no output video", detail=error or "Service unavailable")
