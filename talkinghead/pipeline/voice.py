"""
Speech synthesis via the `generate-voice` backend function.

The function answers either with a stored audio URL or with the audio
inlined as base64. Both are normalized into an AudioReference.
"""

import logging
from typing import Optional

from .errors import CapabilityError
from .models import AudioReference
from .transport import FunctionsTransport, get_transport

logger = logging.getLogger(__name__)

FUNCTION_NAME = "generate-voice"
INLINE_AUDIO_MIME = "audio/mpeg"


def normalize_audio(data: dict) -> AudioReference:
    """
    Turn a generate-voice payload into an AudioReference.

    Raises:
        CapabilityError: success flag is false or no audio came back.
    """
    if data.get("success") is False:
        raise CapabilityError("Failed to generate audio", detail=data.get("error"))

    if data.get("audioUrl"):
        return AudioReference(url=data["audioUrl"], inline=False)
    if data.get("audioBase64"):
        return AudioReference(
            url=f"data:{INLINE_AUDIO_MIME};base64,{data['audioBase64']}",
            inline=True,
        )
    raise CapabilityError("No audio content received", detail=data.get("error"))


class VoiceClient:
    def __init__(self, transport: Optional[FunctionsTransport] = None):
        self._transport = transport

    @property
    def transport(self) -> FunctionsTransport:
        return self._transport or get_transport()

    async def synthesize(self, text: str, voice_id: str) -> AudioReference:
        """
        Synthesize narration for `text` with the given narrator voice.

        Args:
            text:     Full script or canned preview sample.
            voice_id: One of the catalog voices (e.g. "nova").

        Returns:
            AudioReference pointing at a URL or an inline data: URI.
        """
        logger.info(f"TTS request: voice={voice_id}, chars={len(text)}")
        data = await self.transport.invoke(FUNCTION_NAME, {"text": text, "voiceId": voice_id})
        audio = normalize_audio(data)
        logger.info(f"TTS complete: voice={voice_id}, inline={audio.inline}")
        return audio
