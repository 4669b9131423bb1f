"""
Preset Library: narrator voices and background scenes.

Users pick a voice and a "setting"; we inject the canned preview sample and
the hidden scene phrase used in the video prompt.
"""

from enum import Enum


class NarratorVoice(str, Enum):
    NOVA = "nova"
    ALLOY = "alloy"
    ECHO = "echo"
    FABLE = "fable"
    ONYX = "onyx"
    SHIMMER = "shimmer"


DEFAULT_PREVIEW_TEXT = "Hello, this is a voice preview for your training video."

VOICES = {
    "nova": {
        "id": "nova",
        "name": "Nova",
        "gender": "female",
        "description": "Warm, professional",
        "sample": "Welcome to our training program. Today we will explore best practices for success.",
    },
    "alloy": {
        "id": "alloy",
        "name": "Alloy",
        "gender": "neutral",
        "description": "Versatile, clear",
        "sample": "This module covers the essential skills you need to excel in your role.",
    },
    "echo": {
        "id": "echo",
        "name": "Echo",
        "gender": "male",
        "description": "Friendly, warm",
        "sample": "Hey there! Ready to learn something new? Let me walk you through it step by step.",
    },
    "fable": {
        "id": "fable",
        "name": "Fable",
        "gender": "male",
        "description": "Expressive, storyteller",
        "sample": "Picture this: a world where every challenge becomes an opportunity for growth.",
    },
    "onyx": {
        "id": "onyx",
        "name": "Onyx",
        "gender": "male",
        "description": "Deep, authoritative",
        "sample": "The following information is critical to your understanding of company protocols.",
    },
    "shimmer": {
        "id": "shimmer",
        "name": "Shimmer",
        "gender": "female",
        "description": "Soft, gentle",
        "sample": "Take a moment to reflect on what you have learned. Every step forward matters.",
    },
}

# Catalog order matters for preload progress reporting.
VOICE_CATALOG = [v.value for v in NarratorVoice]


DEFAULT_BACKGROUND = "modern_minimalist"

BACKGROUNDS = {
    "golden_hour_studio": {
        "id": "golden_hour_studio",
        "name": "Golden Hour Studio",
        "setting": "warm golden hour studio",
    },
    "modern_minimalist": {
        "id": "modern_minimalist",
        "name": "Modern Minimalist",
        "setting": "clean modern minimalist office",
    },
    "neon_noir_city": {
        "id": "neon_noir_city",
        "name": "Neon Noir",
        "setting": "neon-lit city at night",
    },
    "coastal_serenity": {
        "id": "coastal_serenity",
        "name": "Coastal Serenity",
        "setting": "calm coastal terrace",
    },
    "forest_mystique": {
        "id": "forest_mystique",
        "name": "Forest Mystique",
        "setting": "misty forest clearing",
    },
    "alpine_dawn": {
        "id": "alpine_dawn",
        "name": "Alpine Dawn",
        "setting": "alpine lodge at dawn",
    },
    "cozy_firelight": {
        "id": "cozy_firelight",
        "name": "Cozy Firelight",
        "setting": "cozy room lit by a fireplace",
    },
    "overcast_drama": {
        "id": "overcast_drama",
        "name": "Overcast Drama",
        "setting": "dramatic overcast rooftop",
    },
    "home_studio": {
        "id": "home_studio",
        "name": "Home Studio",
        "setting": "tidy home recording studio",
    },
}


def get_voice(voice_id: str) -> dict:
    """Get the catalog entry for a voice. Raises if the voice is not in the catalog."""
    voice = VOICES.get(voice_id)
    if not voice:
        raise ValueError(f"Unknown voice: {voice_id}. Available: {VOICE_CATALOG}")
    return voice


def get_sample_text(voice_id: str) -> str:
    voice = VOICES.get(voice_id)
    return voice["sample"] if voice else DEFAULT_PREVIEW_TEXT


def get_background(background_id: str) -> dict:
    """Get full background preset config. Raises if preset not found."""
    preset = BACKGROUNDS.get(background_id)
    if not preset:
        raise ValueError(f"Unknown background preset: {background_id}. Available: {list(BACKGROUNDS.keys())}")
    return preset
