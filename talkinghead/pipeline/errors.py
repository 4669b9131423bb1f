"""
Exception taxonomy for the training video pipeline.

Required stages (audio, video) raise GenerationError subclasses that end the
run. Optional stages (compositing, lip sync) raise CapabilityError, which the
DegradationManager absorbs before it ever reaches the caller.
"""

from typing import Optional


# ── Capability / transport ──────────────────────────────────────────────────

class CapabilityError(Exception):
    """A backend function call failed or returned an unusable payload."""

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.status_code = status_code

    def __str__(self) -> str:
        if self.detail and self.detail not in self.message:
            return f"{self.message}: {self.detail}"
        return self.message


class CapabilityUnavailable(CapabilityError):
    """The backend explicitly reported the capability as not configured."""


class UnknownProvider(ValueError):
    pass


# ── Pipeline run ────────────────────────────────────────────────────────────

class GenerationError(Exception):
    """Terminal failure of a pipeline run."""

    kind = "generation_failed"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail and self.detail not in self.message:
            return f"{self.message}: {self.detail}"
        return self.message


class InvalidInput(GenerationError):
    """Preconditions failed. No downstream call was made."""

    kind = "invalid_input"


class AudioSynthesisFailed(GenerationError):
    kind = "audio_synthesis_failed"


class VideoSynthesisFailed(GenerationError):
    """Video synthesis failed, including a poller timeout."""

    kind = "video_synthesis_failed"


class PersistenceFailed(Exception):
    """Writing the video record failed. Logged by the controller, never raised to callers."""


class JobConflict(Exception):
    """A job id is still owned by a run that has not finished."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already running")
        self.job_id = job_id


# ── Polling ─────────────────────────────────────────────────────────────────

class PollError(Exception):
    def __init__(self, message: str, task_id: str = "", provider: str = ""):
        super().__init__(message)
        self.task_id = task_id
        self.provider = provider


class PollFailed(PollError):
    """The provider reported the task as failed."""

    def __init__(
        self,
        message: str,
        task_id: str = "",
        provider: str = "",
        detail: Optional[str] = None,
    ):
        super().__init__(message, task_id, provider)
        self.detail = detail


class PollTimeout(PollError, TimeoutError):
    """
    Max attempts exhausted without a terminal status.

    This does not prove the task failed, only that we stopped waiting.
    """

    def __init__(self, message: str, task_id: str = "", provider: str = "", attempts: int = 0):
        super().__init__(message, task_id, provider)
        self.attempts = attempts


# ── Voice preview ───────────────────────────────────────────────────────────

class PlaybackError(Exception):
    """An audio reference could not be played (unreachable or corrupt)."""


class PreviewFailed(Exception):
    pass
