"""
Character/background compositing via the `composite-character` backend function.

Places the extracted character onto the chosen backdrop before animation.
The backend may answer with "extraction_only" when it could cut out the
character but not blend it; that still counts as a usable still.
"""

import logging
from typing import Optional

from .errors import CapabilityError
from .models import CompositeResult
from .transport import FunctionsTransport, get_transport

logger = logging.getLogger(__name__)

FUNCTION_NAME = "composite-character"

DEFAULT_PLACEMENT = "center"  # "center", "left", "right"
DEFAULT_SCALE = 0.7           # character height relative to frame
DEFAULT_ASPECT_RATIO = "16:9"


class CompositeClient:
    def __init__(self, transport: Optional[FunctionsTransport] = None):
        self._transport = transport

    @property
    def transport(self) -> FunctionsTransport:
        return self._transport or get_transport()

    async def composite(
        self,
        character_image: str,
        background_image: str,
        placement: str = DEFAULT_PLACEMENT,
        scale: float = DEFAULT_SCALE,
        aspect_ratio: str = DEFAULT_ASPECT_RATIO,
    ) -> CompositeResult:
        """
        Composite the character onto the background.

        Args:
            character_image:  URL or data: URI of the character.
            background_image: URL or data: URI of the backdrop.

        Returns:
            CompositeResult with the composited still URL and method used.
        """
        data = await self.transport.invoke(
            FUNCTION_NAME,
            {
                "characterImage": character_image,
                "backgroundImage": background_image,
                "placement": placement,
                "scale": scale,
                "aspectRatio": aspect_ratio,
            },
        )

        image_url = data.get("compositedImageUrl")
        if not data.get("success") or not image_url:
            raise CapabilityError("Compositing failed", detail=data.get("error"))

        method = data.get("method") or "full_composite"
        logger.info(f"Composite ready ({method}): {image_url[:80]}")
        return CompositeResult(image_url=image_url, method=method)
