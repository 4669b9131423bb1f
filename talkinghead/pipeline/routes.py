"""
FastAPI routes for the training video pipeline.

Training Endpoints:
  POST /training/run               Start a run in the background
  POST /training/stream            Run and stream progress (NDJSON)
  GET  /training/status/{job_id}   Get run status

Voice Endpoints:
  GET  /voices                     Voice catalog with cache flags
  POST /voices/{voice_id}/preview  Play (cached or fresh) preview sample
  POST /voices/preload             Fill the preview cache (NDJSON progress)
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from ..presets import VOICES, VOICE_CATALOG
from .errors import InvalidInput, JobConflict, PreviewFailed
from .models import GenerationJob, TrainingRunRequest, VoicePreviewResponse
from .orchestrator import TrainingVideoService
from .voice_cache import VoicePreviewCache, build_voice_cache_store
from .voice_preview import VoicePreviewService

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"


# ── Lazy singletons ──────────────────────────────────────────────────────────

_service: Optional[TrainingVideoService] = None
_previews: Optional[VoicePreviewService] = None


def get_service() -> TrainingVideoService:
    global _service
    if _service is None:
        _service = TrainingVideoService()
    return _service


def get_preview_service() -> VoicePreviewService:
    global _previews
    if _previews is None:
        _previews = VoicePreviewService(VoicePreviewCache(build_voice_cache_store()))
    return _previews


# ═════════════════════════════════════════════════════════════════════════════
# Training Router
# ═════════════════════════════════════════════════════════════════════════════

training_router = APIRouter(prefix="/training", tags=["training"])


@training_router.post("/run", response_model=GenerationJob)
async def start_run(request: TrainingRunRequest):
    """Start a training video run. Poll /training/status/{job_id} for progress."""
    service = get_service()
    generation_request = request.to_generation_request()
    try:
        service.validate(generation_request)
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        job_id = service.run_background(generation_request, job_id=request.job_id)
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return service.get_status(job_id)


@training_router.post("/stream")
async def stream_run(request: TrainingRunRequest):
    """Run the pipeline and stream one JSON ProgressEvent per line."""
    service = get_service()
    try:
        events = service.stream(request.to_generation_request(), job_id=request.job_id)
    except JobConflict as e:
        raise HTTPException(status_code=409, detail=str(e))

    async def _events():
        async for event in events:
            yield event.model_dump_json() + "\n"

    return StreamingResponse(_events(), media_type=NDJSON)


@training_router.get("/status/{job_id}", response_model=GenerationJob)
async def get_run_status(job_id: str):
    job = get_service().get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


# ═════════════════════════════════════════════════════════════════════════════
# Voice Router
# ═════════════════════════════════════════════════════════════════════════════

voice_router = APIRouter(prefix="/voices", tags=["voices"])


@voice_router.get("")
async def list_voices():
    cached = await asyncio.to_thread(get_preview_service().cache.cached_voices, VOICE_CATALOG)
    return [{**VOICES[v], "cached": v in cached} for v in VOICE_CATALOG]


@voice_router.post("/preload")
async def preload_voices():
    """Fill the preview cache; streams PreloadProgress as NDJSON."""
    previews = get_preview_service()

    async def _progress():
        # A disconnect must release the preload lock.
        async with aclosing(previews.preload_all()) as progress_events:
            async for progress in progress_events:
                yield progress.model_dump_json() + "\n"

    return StreamingResponse(_progress(), media_type=NDJSON)


@voice_router.post("/{voice_id}/preview", response_model=VoicePreviewResponse)
async def preview_voice(voice_id: str):
    try:
        handle = await get_preview_service().preview(voice_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PreviewFailed as e:
        logger.error(f"Voice preview failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(e))
    return VoicePreviewResponse(voice_id=handle.voice_id, audio_url=handle.audio_url, cached=handle.cached)
