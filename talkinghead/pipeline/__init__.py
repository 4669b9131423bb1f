"""
Training Video Pipeline

Turns a script, narrator voice, character still and backdrop into a
talking-head training video:
  Narration:  generate-voice
  Video:      composite-character, then generate-video with status polling
  Lip sync:   lip-sync-service (optional, falls back to the raw video)
Voice previews are served from a versioned one-week cache.
"""

from .orchestrator import TrainingVideoService
from .routes import training_router, voice_router
from .models import GenerationStage
from .voice_preview import VoicePreviewService

__all__ = [
    "TrainingVideoService",
    "training_router",
    "voice_router",
    "GenerationStage",
    "VoicePreviewService",
]
