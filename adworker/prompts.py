"""
Prompt selection for the pipeline stages.

The cinematographer prefers a product-aware prompt: the analyzer's caption is
matched against a keyword table and the first matching category's template
is filled with a short product name. Without a caption it falls back to the
job's vibe preset, and finally to a generic showcase prompt.
"""

import re
import logging
from typing import NamedTuple, Optional

from .presets import PRESETS
from .pipeline.models import Stage, Vibe

logger = logging.getLogger(__name__)

DEFAULT_NEGATIVE_PROMPT = (
    "blur, distort, low quality, pixelated, shaky, text overlay, watermark, "
    "poor lighting, overexposed, underexposed"
)

GENERIC_TEMPLATE = (
    "{product} product showcase, slowly rotating 360 degrees, professional studio lighting with "
    "soft shadows, clean white background, premium commercial photography style, smooth cinematic motion"
)

GENERIC_PROMPT = (
    "Product showcase, slowly rotating 360 degrees, professional studio lighting with soft "
    "shadows, clean background, premium commercial photography style, smooth cinematic motion"
)

# ── Category table ───────────────────────────────────────────────────────────
# Checked in order; the first category with a keyword hit wins.

CATEGORIES = [
    {
        "name": "beverage",
        "keywords": ["can", "bottle", "drink", "cola", "beverage", "soda", "beer", "water"],
        "template": (
            "{product} slowly rotating on a reflective dark surface, condensation droplets "
            "glistening on the surface, cool blue studio lighting with warm accent lights, premium "
            "beverage commercial aesthetic, smooth 360 rotation, cinematic quality"
        ),
    },
    {
        "name": "electronics",
        "keywords": ["phone", "laptop", "device", "electronic", "screen", "tablet", "computer",
                     "camera", "headphone"],
        "template": (
            "{product} floating and rotating in a minimalist dark environment, subtle holographic "
            "reflections, premium tech product showcase, smooth cinematic camera orbit, "
            "Apple-style commercial aesthetic"
        ),
    },
    {
        "name": "fashion",
        "keywords": ["shoe", "watch", "bag", "clothing", "jewelry", "accessory", "purse",
                     "wallet", "belt", "hat"],
        "template": (
            "{product} elegantly displayed with dramatic side lighting, subtle rotation revealing "
            "details, luxury fashion photography style, soft shadows, high-end commercial quality"
        ),
    },
    {
        "name": "food",
        "keywords": ["food", "snack", "package", "box", "cookie", "chip", "candy", "chocolate"],
        "template": (
            "{product} on a clean surface with appetizing presentation, warm golden lighting, "
            "gentle camera push-in, food photography commercial style, mouth-watering aesthetic"
        ),
    },
    {
        "name": "cosmetics",
        "keywords": ["cosmetic", "makeup", "perfume", "fragrance", "lipstick", "beauty",
                     "skincare", "lotion"],
        "template": (
            "{product} on elegant marble surface, soft diffused lighting with subtle pink and gold "
            "accents, gentle rotation revealing label, luxury beauty commercial aesthetic, premium "
            "product photography"
        ),
    },
    {
        "name": "home-decor",
        "keywords": ["vase", "lamp", "candle", "decor", "furniture", "pillow", "plant"],
        "template": (
            "{product} in a modern minimalist setting, natural window lighting, slow camera dolly "
            "creating depth, interior design magazine aesthetic, warm inviting atmosphere"
        ),
    },
    {
        "name": "toys",
        "keywords": ["toy", "game", "doll", "figure", "puzzle", "card"],
        "template": (
            "{product} on colorful vibrant background, playful dynamic lighting, gentle rotation "
            "showing all angles, fun energetic commercial style, bright cheerful atmosphere"
        ),
    },
]

# Whole words with an optional plural, so "can" does not match "candle".
_CATEGORY_PATTERNS = [
    (c, re.compile(r"\b(?:" + "|".join(map(re.escape, c["keywords"])) + r")(?:s|es)?\b"))
    for c in CATEGORIES
]


class Prompts(NamedTuple):
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None


def extract_product_name(description: str, max_words: int = 6) -> str:
    words = " ".join(description.split()[:max_words])
    return words[:1].upper() + words[1:]


def detect_category(description: str) -> Optional[str]:
    text = description.lower()
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(text):
            return category["name"]
    return None


def generate_smart_prompt(description: str) -> str:
    """Video prompt tailored to the product type found in `description`."""
    product = extract_product_name(description)
    name = detect_category(description)
    for category in CATEGORIES:
        if category["name"] == name:
            return category["template"].format(product=product)
    return GENERIC_TEMPLATE.format(product=product)


def prompts_for_stage(
    stage: Stage,
    vibe: Optional[Vibe] = None,
    product_description: Optional[str] = None,
    job_id: str = "",
) -> Prompts:
    """Prompt pair for a stage. Analyzer and extractor take none."""
    if stage in (Stage.ANALYZER, Stage.EXTRACTOR):
        return Prompts()

    preset = PRESETS.get(vibe) if vibe is not None else None

    if stage == Stage.SET_DESIGNER:
        if preset is None:
            logger.warning(f"[{job_id}] No vibe preset for {vibe}, set designer runs without a prompt")
            return Prompts()
        return Prompts(preset["scene_prompt"], preset["negative_prompt"])

    # Cinematographer
    if product_description:
        prompt = generate_smart_prompt(product_description)
        logger.info(f"[{job_id}] Product-aware prompt ({detect_category(product_description) or 'generic'}): {prompt[:80]}")
        return Prompts(prompt, DEFAULT_NEGATIVE_PROMPT)
    if preset is not None:
        return Prompts(preset["video_prompt"], DEFAULT_NEGATIVE_PROMPT)

    logger.warning(f"[{job_id}] No product description or vibe preset, using generic prompt")
    return Prompts(GENERIC_PROMPT, DEFAULT_NEGATIVE_PROMPT)
