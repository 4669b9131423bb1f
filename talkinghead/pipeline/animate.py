"""
Video synthesis: animates the character still into a talking-head clip.

Submission goes through the `generate-video` backend function, which may
return the finished video directly or a task id to poll through
`check-video-status`.
"""

import math
import logging
from typing import Optional

from .errors import CapabilityError
from .models import (
    AsyncTaskHandle,
    DeferredVideo,
    ImmediateVideo,
    VideoSubmission,
)
from .transport import FunctionsTransport, get_transport

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

SUBMIT_FUNCTION = "generate-video"
STATUS_FUNCTION = "check-video-status"

DEFAULT_PROVIDER = "replicate"
ASPECT_RATIO = "16:9"

CHARS_PER_SECOND = 15
MAX_DURATION_SECONDS = 10

TALKING_HEAD_PROMPT = (
    "Professional talking head video. A person speaking directly to camera in a {setting} setting. "
    "Natural head movements, professional presentation style, corporate training video aesthetic. "
    "The person is delivering an educational presentation with confident body language."
)


def duration_for_script(script: str) -> int:
    """Target clip length: ~15 characters per second, capped at MAX_DURATION_SECONDS."""
    return max(1, min(math.ceil(len(script) / CHARS_PER_SECOND), MAX_DURATION_SECONDS))


def build_prompt(setting: Optional[str]) -> str:
    return TALKING_HEAD_PROMPT.format(setting=setting or "professional studio")


def parse_submission(data: dict) -> VideoSubmission:
    """
    Classify a generate-video response.

    A direct `videoUrl` wins; otherwise a `taskId` becomes a DeferredVideo.
    """
    if data.get("success") is False:
        raise CapabilityError("Video generation failed", detail=data.get("error"))

    if data.get("videoUrl"):
        return ImmediateVideo(video_url=data["videoUrl"])

    # Kie returns { data: { taskId: ... } }
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    task_id = data.get("taskId") or data.get("task_id") or nested.get("taskId") or nested.get("task_id")
    if task_id:
        provider = data.get("provider") or DEFAULT_PROVIDER
        return DeferredVideo(handle=AsyncTaskHandle(task_id=str(task_id), provider=provider))

    raise CapabilityError("No video URL or task id received", detail=data.get("error"))


class VideoClient:
    def __init__(self, transport: Optional[FunctionsTransport] = None):
        self._transport = transport

    @property
    def transport(self) -> FunctionsTransport:
        return self._transport or get_transport()

    async def submit(
        self,
        prompt: str,
        image_ref: str,
        user_id: str,
        duration: int,
        image_base64: Optional[str] = None,
        aspect_ratio: str = ASPECT_RATIO,
    ) -> VideoSubmission:
        """
        Submit an image-to-video job.

        Args:
            prompt:       Scene prompt.
            image_ref:    URL or data: URI of the still to animate.
            user_id:      Requesting user.
            duration:     Target length in seconds (already capped).
            image_base64: Raw base64 of the still when it is inline.
            aspect_ratio: Output aspect ratio.

        Returns:
            ImmediateVideo or DeferredVideo.
        """
        payload = {
            "prompt": prompt,
            "imageUrl": image_ref,
            "aspectRatio": aspect_ratio,
            "duration": min(duration, MAX_DURATION_SECONDS),
            "userId": user_id,
        }
        if image_base64:
            payload["imageBase64"] = image_base64

        logger.info(f"Video submit: user={user_id}, duration={payload['duration']}s, aspect={aspect_ratio}")
        data = await self.transport.invoke(SUBMIT_FUNCTION, payload)
        submission = parse_submission(data)

        if isinstance(submission, DeferredVideo):
            logger.info(
                f"Video task submitted: task_id={submission.handle.task_id}, provider={submission.handle.provider}"
            )
        else:
            logger.info("Video returned synchronously")
        return submission

    async def check_status(self, handle: AsyncTaskHandle) -> dict:
        """Raw provider-specific status payload for a task."""
        return await self.transport.invoke(
            STATUS_FUNCTION,
            {"taskId": handle.task_id, "provider": handle.provider},
        )
