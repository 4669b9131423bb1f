"""
TrainingVideoService: main pipeline orchestrator.

Turns a script, narrator voice, character still and backdrop into a
talking-head video:
  Stage 1: Narration      (generate-voice)                     0 → 30%
  Stage 2: Video          (composite-character → generate-video
                           → check-video-status polling)       30 → 80%
  Stage 3: Lip sync       (lip-sync-service, optional)          80 → 100%
  Then:    Persist the finished video record (best effort)

Stages run strictly in order, one outstanding backend call at a time.
Audio and video are required; compositing and lip sync degrade to their
baseline instead of failing the run.
"""

import os
import time
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional
from uuid import uuid4

from .. import metrics
from ..presets import get_background
from . import storage
from .animate import VideoClient, build_prompt, duration_for_script
from .composite import CompositeClient
from .errors import (
    AudioSynthesisFailed,
    GenerationError,
    InvalidInput,
    JobConflict,
    PollFailed,
    PollTimeout,
    UnknownProvider,
    VideoSynthesisFailed,
)
from .fallback import Decision, DegradationManager
from .lipsync import LipSyncClient
from .models import (
    AudioReference,
    DeferredVideo,
    GenerationJob,
    GenerationRequest,
    GenerationStage,
    PersistedVideoRecord,
    ProgressEvent,
    TERMINAL_STAGES,
    can_transition,
)
from .poller import AsyncTaskPoller
from .records import SupabaseVideoRecordStore, VideoRecordStore
from .voice import VoiceClient

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ENABLE_COMPOSITING = os.getenv("ENABLE_COMPOSITING", "true").lower() in ("1", "true", "yes")
JOB_RETENTION_SECONDS = int(os.getenv("JOB_RETENTION_SECONDS", "3600"))  # finished jobs kept for status reads

# Progress checkpoints
PROGRESS_AUDIO_START = 10
PROGRESS_AUDIO_DONE = 30
PROGRESS_COMPOSITE = 35
PROGRESS_VIDEO_SUBMITTED = 40
PROGRESS_POLL_STEP = 5
PROGRESS_POLL_CEILING = 75
PROGRESS_VIDEO_DONE = 80
PROGRESS_LIPSYNC_START = 90
PROGRESS_COMPLETE = 100

CUSTOM_BACKGROUND_SETTING = "custom backdrop"

ProgressCallback = Callable[[ProgressEvent], None]


class TrainingVideoService:
    """
    Usage:
        service = TrainingVideoService()

        # Blocking run (raises GenerationError on failure)
        job = await service.run(request)

        # Streaming run for the UI
        async for event in service.stream(request):
            ...
    """

    def __init__(
        self,
        voice: Optional[VoiceClient] = None,
        video: Optional[VideoClient] = None,
        lipsync: Optional[LipSyncClient] = None,
        compositor: Optional[CompositeClient] = None,
        poller: Optional[AsyncTaskPoller] = None,
        records: Optional[VideoRecordStore] = None,
        degradation: Optional[DegradationManager] = None,
        enable_compositing: bool = ENABLE_COMPOSITING,
        background_base_url: Optional[str] = None,
        job_retention_seconds: int = JOB_RETENTION_SECONDS,
    ):
        self.voice = voice or VoiceClient()
        self.video = video or VideoClient()
        self.lipsync = lipsync or LipSyncClient()
        self.compositor = compositor or CompositeClient()
        self.poller = poller or AsyncTaskPoller(self.video.check_status)
        self.records = records or SupabaseVideoRecordStore()
        self.degradation = degradation or DegradationManager()
        self.enable_compositing = enable_compositing
        self.background_base_url = background_base_url
        self.job_retention_seconds = job_retention_seconds
        self._jobs: dict[str, GenerationJob] = {}
        self._background_tasks: set[asyncio.Task] = set()

    def get_status(self, job_id: str) -> Optional[GenerationJob]:
        """Current state of a run, or None if the job id is unknown."""
        return self._jobs.get(job_id)

    # ── State transitions ────────────────────────────────────────────────

    def _emit(
        self,
        job: GenerationJob,
        on_progress: Optional[ProgressCallback],
        notice: Optional[str] = None,
    ):
        logger.info(f"[{job.job_id}] {job.stage.value} ({job.progress}%)" + (f": {notice}" if notice else ""))
        if on_progress is None:
            return
        on_progress(ProgressEvent(
            job_id=job.job_id,
            stage=job.stage,
            progress=job.progress,
            error=job.error,
            notice=notice,
            final_video_url=job.final_video_url if job.stage == GenerationStage.COMPLETE else None,
        ))

    def _advance(
        self,
        job: GenerationJob,
        stage: GenerationStage,
        progress: int,
        on_progress: Optional[ProgressCallback],
    ):
        if not can_transition(job.stage, stage):
            raise RuntimeError(f"Illegal stage transition {job.stage.value} → {stage.value}")
        job.stage = stage
        job.progress = max(job.progress, progress)
        job.updated_at = datetime.now(timezone.utc)
        self._emit(job, on_progress)

    def _set_progress(self, job: GenerationJob, progress: int, on_progress: Optional[ProgressCallback]):
        if progress <= job.progress:
            return
        job.progress = progress
        job.updated_at = datetime.now(timezone.utc)
        self._emit(job, on_progress)

    def _add_notice(self, job: GenerationJob, notice: Optional[str], on_progress: Optional[ProgressCallback]):
        if not notice:
            return
        job.notices.append(notice)
        self._emit(job, on_progress, notice=notice)

    def _fail(self, job: GenerationJob, error: Exception, on_progress: Optional[ProgressCallback]):
        stage = job.stage
        job.error = str(error)
        self._advance(job, GenerationStage.ERROR, job.progress, on_progress)
        kind = getattr(error, "kind", "unexpected")
        metrics.inc_counter(f"runs.failed.{kind}")
        metrics.record_error(stage.value, kind, job.error, job.job_id)

    # ── Preconditions ────────────────────────────────────────────────────

    def _resolve_background(self, request: GenerationRequest) -> tuple[str, str]:
        """(image reference, prompt setting) for the request's backdrop."""
        if request.custom_background is not None and request.custom_background.reference:
            return request.custom_background.reference, CUSTOM_BACKGROUND_SETTING

        try:
            preset = get_background(request.background or "")
        except ValueError as e:
            raise InvalidInput("Please choose a background", detail=str(e)) from e
        url = storage.preset_background_url(preset["id"], self.background_base_url)
        return url, preset["setting"]

    def validate(self, request: GenerationRequest) -> None:
        """Raise InvalidInput if the request cannot start a run."""
        self._check_preconditions(request)

    def _check_preconditions(self, request: GenerationRequest) -> tuple[str, str]:
        if request.character_image is None or not request.character_image.reference:
            raise InvalidInput("Please upload a character image and enter script text",
                               detail="Character image is missing")
        if not request.script or not request.script.strip():
            raise InvalidInput("Please upload a character image and enter script text",
                               detail="Script text is empty")
        return self._resolve_background(request)

    # ── Stage 1: Narration ───────────────────────────────────────────────

    async def _generate_audio(
        self,
        job: GenerationJob,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback],
    ) -> AudioReference:
        self._advance(job, GenerationStage.GENERATING_AUDIO, PROGRESS_AUDIO_START, on_progress)
        started = time.time()
        try:
            audio = await self.voice.synthesize(request.script, request.voice.value)
        except Exception as e:
            raise AudioSynthesisFailed("Failed to generate audio", detail=getattr(e, "detail", None) or str(e)) from e

        metrics.record_latency("audio", (time.time() - started) * 1000)
        job.audio_url = audio.url
        self._set_progress(job, PROGRESS_AUDIO_DONE, on_progress)
        return audio

    # ── Stage 2: Video ───────────────────────────────────────────────────

    async def _composite(self, character_ref: str, background_ref: str) -> Optional[str]:
        result = await self.compositor.composite(character_ref, background_ref)
        return result.image_url

    async def _generate_video(
        self,
        job: GenerationJob,
        request: GenerationRequest,
        background: tuple[str, str],
        on_progress: Optional[ProgressCallback],
    ) -> str:
        self._advance(job, GenerationStage.GENERATING_VIDEO, PROGRESS_AUDIO_DONE, on_progress)
        started = time.time()
        background_ref, setting = background
        character = request.character_image
        source_ref = character.reference
        source_base64 = character.inline_payload

        if self.enable_compositing:
            self._set_progress(job, PROGRESS_COMPOSITE, on_progress)
            outcome = await self.degradation.resolve(
                "composite",
                self._composite(character.reference, background_ref),
                baseline=character.reference,
            )
            if outcome.decision == Decision.USE_ENHANCED:
                source_ref, source_base64 = outcome.value, None
            else:
                self._add_notice(job, outcome.notice, on_progress)

        try:
            submission = await self.video.submit(
                prompt=build_prompt(setting),
                image_ref=source_ref,
                user_id=request.user_id,
                duration=duration_for_script(request.script),
                image_base64=source_base64,
            )
        except Exception as e:
            raise VideoSynthesisFailed(
                "Failed to start video generation", detail=getattr(e, "detail", None) or str(e)
            ) from e
        self._set_progress(job, PROGRESS_VIDEO_SUBMITTED, on_progress)

        if isinstance(submission, DeferredVideo):
            def _on_attempt(attempt: int, max_attempts: int):
                progress = min(PROGRESS_VIDEO_SUBMITTED + PROGRESS_POLL_STEP * attempt, PROGRESS_POLL_CEILING)
                self._set_progress(job, progress, on_progress)

            try:
                video_url = await self.poller.poll(submission.handle, on_attempt=_on_attempt)
            except PollTimeout as e:
                raise VideoSynthesisFailed("Video generation timed out", detail=str(e)) from e
            except PollFailed as e:
                raise VideoSynthesisFailed("Video generation failed", detail=e.detail or str(e)) from e
            except UnknownProvider as e:
                raise VideoSynthesisFailed("Video generation failed", detail=str(e)) from e
        else:
            video_url = submission.video_url

        metrics.record_latency("video", (time.time() - started) * 1000)
        job.video_url = video_url
        self._set_progress(job, PROGRESS_VIDEO_DONE, on_progress)
        return video_url

    # ── Stage 3: Lip sync ────────────────────────────────────────────────

    async def _audio_for_sync(self, job: GenerationJob, audio: AudioReference) -> str:
        """Lip sync wants a fetchable URL; upload inline narration when storage allows."""
        if not audio.inline or not storage.is_configured():
            return audio.url
        try:
            return await storage.persist_inline_audio(job.user_id, job.job_id, audio.url)
        except Exception as e:
            logger.warning(f"[{job.job_id}] Could not upload inline narration, sending data URI: {e}")
            return audio.url

    async def _apply_lipsync(
        self,
        job: GenerationJob,
        request: GenerationRequest,
        audio: AudioReference,
        video_url: str,
        on_progress: Optional[ProgressCallback],
    ) -> str:
        self._advance(job, GenerationStage.APPLYING_LIPSYNC, PROGRESS_LIPSYNC_START, on_progress)
        started = time.time()
        audio_url = await self._audio_for_sync(job, audio)

        outcome = await self.degradation.resolve(
            "lipsync",
            self.lipsync.sync(video_url, audio_url, request.user_id),
            baseline=video_url,
        )
        if outcome.decision == Decision.PROPAGATE_ERROR:
            raise VideoSynthesisFailed("No video available after lip sync", detail=outcome.error)

        metrics.record_latency("lipsync", (time.time() - started) * 1000)
        job.lipsync_applied = outcome.enhanced
        job.final_video_url = outcome.value
        self._add_notice(job, outcome.notice, on_progress)
        return outcome.value

    # ── Persistence ──────────────────────────────────────────────────────

    async def _persist(self, job: GenerationJob, request: GenerationRequest):
        script = request.script.strip()
        record = PersistedVideoRecord(
            user_id=request.user_id,
            title=request.title or (script[:60] + ("…" if len(script) > 60 else "")),
            description=request.description or script,
            video_url=job.final_video_url,
            voice=request.voice.value,
            background=request.background or "custom",
            lipsync_applied=job.lipsync_applied,
        )
        try:
            await self.records.append(record)
        except Exception as e:
            metrics.inc_counter("persistence.failed")
            logger.error(f"[{job.job_id}] Failed to persist video record: {e}", exc_info=True)

    # ── Job registry ─────────────────────────────────────────────────────

    def _prune_jobs(self):
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.job_retention_seconds)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.stage in TERMINAL_STAGES and job.updated_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info(f"Pruned {len(expired)} finished job(s)")

    def _register(self, job_id: Optional[str], user_id: str) -> GenerationJob:
        """
        Claim a job id for a new run.

        A finished job with the same id is replaced; an unfinished one is not.

        Raises:
            JobConflict: the id belongs to a run that is still in flight.
        """
        self._prune_jobs()
        job_id = job_id or str(uuid4())
        existing = self._jobs.get(job_id)
        if existing is not None and existing.stage not in TERMINAL_STAGES:
            raise JobConflict(job_id)
        job = GenerationJob(job_id=job_id, user_id=user_id)
        self._jobs[job_id] = job
        return job

    def _release(self, job: GenerationJob):
        """End a cancelled run in the error stage so its id can be reused."""
        if job.stage in TERMINAL_STAGES:
            return
        logger.warning(f"[{job.job_id}] Cancelled at {job.stage.value}")
        metrics.inc_counter("runs.cancelled")
        job.error = "Run cancelled"
        self._advance(job, GenerationStage.ERROR, job.progress, None)

    # ── Public API ───────────────────────────────────────────────────────

    async def run(
        self,
        request: GenerationRequest,
        job_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        """
        Run the full pipeline for one request.

        Args:
            request:     Immutable generation input.
            job_id:      Optional id; generated when omitted.
            on_progress: Called synchronously with every ProgressEvent.

        Returns:
            The completed GenerationJob (final_video_url set).

        Raises:
            JobConflict:           job_id belongs to a run still in flight.
            InvalidInput:          preconditions failed, nothing was called.
            AudioSynthesisFailed:  narration could not be produced.
            VideoSynthesisFailed:  video could not be produced (incl. timeouts).
        """
        job = self._register(job_id, request.user_id)
        return await self._execute(job, request, on_progress)

    async def _execute(
        self,
        job: GenerationJob,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback],
    ) -> GenerationJob:
        try:
            background = self._check_preconditions(request)
        except InvalidInput as e:
            logger.warning(f"[{job.job_id}] Rejected: {e}")
            self._fail(job, e, on_progress)
            raise

        metrics.inc_counter("runs.started")
        logger.info(f"[{job.job_id}] Starting training video for user {request.user_id} (voice={request.voice.value})")

        try:
            audio = await self._generate_audio(job, request, on_progress)
            video_url = await self._generate_video(job, request, background, on_progress)
            await self._apply_lipsync(job, request, audio, video_url, on_progress)
            await self._persist(job, request)
        except asyncio.CancelledError:
            self._release(job)
            raise
        except GenerationError as e:
            logger.error(f"[{job.job_id}] Pipeline failed at {job.stage.value}: {e}", exc_info=True)
            self._fail(job, e, on_progress)
            raise
        except Exception as e:
            logger.error(f"[{job.job_id}] Unexpected pipeline error at {job.stage.value}: {e}", exc_info=True)
            self._fail(job, e, on_progress)
            raise

        self._advance(job, GenerationStage.COMPLETE, PROGRESS_COMPLETE, on_progress)
        metrics.inc_counter("runs.completed")
        return job

    def stream(
        self,
        request: GenerationRequest,
        job_id: Optional[str] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run the pipeline and yield every ProgressEvent, ending with a
        terminal `complete` or `error` event.

        The job id is claimed before the first event, so JobConflict is
        raised here rather than mid-stream.

        If the consumer stops iterating early the local run is cancelled;
        work already submitted to providers is left to finish unobserved.
        """
        job = self._register(job_id, request.user_id)
        return self._stream_events(job, request)

    async def _stream_events(self, job: GenerationJob, request: GenerationRequest) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue()

        async def _drive():
            try:
                await self._execute(job, request, queue.put_nowait)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(_drive())
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    finished = True
                    break
                yield event
        finally:
            if finished:
                # A failure was already reported as the terminal event.
                await asyncio.gather(task, return_exceptions=True)
            elif not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                self._release(job)

    def run_background(self, request: GenerationRequest, job_id: Optional[str] = None) -> str:
        """
        Fire-and-forget wrapper for run(). Returns the job id to poll.

        Raises:
            JobConflict: job_id belongs to a run still in flight.
        """
        job = self._register(job_id, request.user_id)

        async def _run():
            try:
                await self._execute(job, request, None)
            except Exception:
                pass  # recorded on the job by _execute()

        task = asyncio.create_task(_run())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(lambda _: self._release(job))
        return job.job_id

    async def shutdown(self):
        """Cancel runs still in flight. Their jobs end in the error stage."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelling {len(tasks)} in-flight run(s)")
            await asyncio.gather(*tasks, return_exceptions=True)
