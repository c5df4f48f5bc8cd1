"""
Vibe presets: the hidden prompts behind each aesthetic.
Users pick a vibe; the set designer and cinematographer get the real prompts.
"""

from .pipeline.models import Vibe

PRESETS = {
    Vibe.MINIMALIST: {
        "id": "minimalist",
        "name": "Minimalist",
        "scene_prompt": (
            "Product placed on a seamless matte white pedestal in a bright, airy studio, soft "
            "diffused daylight from a large window, gentle natural shadows, clean negative space, "
            "Scandinavian design aesthetic, neutral off-white and light grey palette"
        ),
        "negative_prompt": (
            "clutter, busy background, harsh shadows, saturated colors, text, watermark, "
            "extra objects, low quality, blurry"
        ),
        "video_prompt": (
            "Slow, steady camera push-in toward the product, soft daylight shifting subtly across "
            "the scene, calm and quiet mood, minimalist commercial aesthetic, smooth cinematic motion"
        ),
    },
    Vibe.ECO_FRIENDLY: {
        "id": "eco_friendly",
        "name": "Eco Friendly",
        "scene_prompt": (
            "Product resting on a natural wooden slab surrounded by fresh green leaves and moss, "
            "dappled morning sunlight filtering through foliage, earthy tones, organic textures, "
            "sustainable lifestyle photography, shallow depth of field"
        ),
        "negative_prompt": (
            "plastic, artificial, neon colors, urban background, text, watermark, "
            "low quality, blurry"
        ),
        "video_prompt": (
            "Gentle handheld orbit around the product, leaves swaying softly in a light breeze, "
            "warm sunlight flickering through the canopy, fresh natural atmosphere, organic commercial feel"
        ),
    },
    Vibe.HIGH_ENERGY: {
        "id": "high_energy",
        "name": "High Energy",
        "scene_prompt": (
            "Product on a glossy reflective floor against a bold gradient backdrop of electric "
            "blue and hot magenta, neon rim lighting, dynamic light streaks, sports commercial "
            "energy, high contrast, vivid saturated colors"
        ),
        "negative_prompt": (
            "dull colors, flat lighting, static, muted tones, text, watermark, "
            "low quality, blurry"
        ),
        "video_prompt": (
            "Fast dynamic camera whip around the product, pulsing neon lights, quick dramatic "
            "light sweeps, energetic sports commercial pacing, punchy high-contrast motion"
        ),
    },
    Vibe.LUXURY_NOIR: {
        "id": "luxury_noir",
        "name": "Luxury Noir",
        "scene_prompt": (
            "Product on a polished black marble surface in a dark moody room, single dramatic "
            "spotlight from above, subtle gold accents, soft haze in the air, deep shadows, "
            "high-end luxury advertising, rich blacks and warm highlights"
        ),
        "negative_prompt": (
            "bright background, cheap materials, clutter, overexposed, text, watermark, "
            "low quality, blurry"
        ),
        "video_prompt": (
            "Slow cinematic dolly around the product, spotlight catching reflective edges, haze "
            "drifting through the beam, elegant and mysterious mood, premium luxury commercial"
        ),
    },
}


def list_presets() -> list:
    """Vibe ids and display names, in picker order. Prompts stay server-side."""
    return [
        {"id": p["id"], "name": p["name"]}
        for p in PRESETS.values()
    ]
