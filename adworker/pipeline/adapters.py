"""
Model adapters: one class per concrete model behind a pipeline stage.

Every adapter takes an AdapterInput (input URL, per-model config from the
model_configs table, optional prompts) and returns the provider's output URL.
Swapping which adapter handles a stage is a data change in model_configs, not
a code change; see switchboard.py.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .fal import FalClient
from .models import AdapterInput, AdapterOutput, Stage

logger = logging.getLogger(__name__)

GENERIC_VIDEO_PROMPT = (
    "Product showcase, slowly rotating 360 degrees, professional studio lighting with soft "
    "shadows, clean white background, premium commercial photography style, smooth cinematic motion"
)
PRESERVE_PRODUCT_SUFFIX = (
    ". IMPORTANT: Preserve the product exactly as shown, do not modify, alter, or change the "
    "product in any way. Only generate the background scene around the product."
)
PRESERVE_PRODUCT_NEGATIVE = (
    "modifying the product, changing the product appearance, altering product details, "
    "product distortion, product color changes"
)


class ModelAdapter(ABC):
    """Base class for all model adapters."""

    stage: Stage
    model_name: str

    def __init__(self, client: Optional[FalClient] = None):
        self.client = client or FalClient()

    @abstractmethod
    async def execute(self, input: AdapterInput) -> AdapterOutput:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.model_name} ({self.stage.value})>"


# ═════════════════════════════════════════════════════════════════════════════
# Analyzer
# ═════════════════════════════════════════════════════════════════════════════

class Florence2Adapter(ModelAdapter):
    """Product captioning. Passes the input image through as its output."""

    stage = Stage.ANALYZER
    model_name = "fal-ai/florence-2-large/caption"

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        logger.info(f"[{input.job_id}] Florence-2 product analysis")
        result = await self.client.subscribe(self.model_name, {"image_url": input.input_url})

        description = result.get("results")
        if not isinstance(description, str) or not description.strip():
            raise RuntimeError(f"Florence-2 returned no caption: {result}")

        logger.info(f"[{input.job_id}] Product detected: {description}")
        return AdapterOutput(
            output_url=input.input_url,
            metadata={"product_description": description.strip()},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Extractor
# ═════════════════════════════════════════════════════════════════════════════

class BiRefNetAdapter(ModelAdapter):
    """Background removal → transparent PNG."""

    stage = Stage.EXTRACTOR
    model_name = "fal-ai/birefnet"

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        cfg = input.config
        payload = {
            "image_url": input.input_url,
            "model": cfg.get("model", "General Use (Heavy)"),
            "operating_resolution": cfg.get("operating_resolution", "1024x1024"),
            "refine_foreground": cfg.get("refine_foreground", True),
            "output_format": cfg.get("output_format", "png"),
        }
        logger.info(f"[{input.job_id}] BiRefNet background removal")
        result = await self.client.subscribe(self.model_name, payload)

        image = result.get("image") or {}
        if not image.get("url"):
            raise RuntimeError(f"BiRefNet returned no image: {result}")

        return AdapterOutput(
            output_url=image["url"],
            metadata={
                "width": image.get("width"),
                "height": image.get("height"),
                "content_type": image.get("content_type"),
            },
        )


# ═════════════════════════════════════════════════════════════════════════════
# Set designer
# ═════════════════════════════════════════════════════════════════════════════

class FluxFillAdapter(ModelAdapter):
    """Generates a background scene around the extracted product."""

    stage = Stage.SET_DESIGNER
    model_name = "fal-ai/flux-pro/v1/fill"
    mask_endpoint = "fal-ai/image-to-image"

    async def _mask_from_transparent(self, job_id: str, image_url: str) -> str:
        # Product pixels black (kept), transparent pixels white (generated).
        try:
            result = await self.client.subscribe(self.mask_endpoint, {
                "image_url": image_url,
                "prompt": "convert transparency to white mask, make opaque areas black",
                "strength": 1.0,
                "num_inference_steps": 10,
                "guidance_scale": 1.0,
            })
            return result["images"][0]["url"]
        except Exception as e:
            logger.warning(f"[{job_id}] Mask generation failed, using source image as mask: {e}")
            return image_url

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        if not input.prompt:
            raise ValueError("Prompt is required for Flux Fill")

        cfg = input.config
        mask_url = await self._mask_from_transparent(input.job_id, input.input_url)
        negative = ", ".join(p for p in (input.negative_prompt, PRESERVE_PRODUCT_NEGATIVE) if p)

        payload = {
            "image_url": input.input_url,
            "mask_url": mask_url,
            "prompt": f"{input.prompt}{PRESERVE_PRODUCT_SUFFIX}",
            "negative_prompt": negative,
            "num_inference_steps": cfg.get("num_inference_steps", 30),
            "guidance_scale": cfg.get("guidance_scale", 7.5),
            "output_format": cfg.get("output_format", "png"),
        }
        logger.info(f"[{input.job_id}] Flux Fill scene: {input.prompt[:80]}")
        result = await self.client.subscribe(self.model_name, payload)

        images = result.get("images") or []
        if not images or not images[0].get("url"):
            raise RuntimeError(f"Flux Fill returned no images: {result}")

        image = images[0]
        return AdapterOutput(
            output_url=image["url"],
            metadata={
                "width": image.get("width"),
                "height": image.get("height"),
                "content_type": image.get("content_type"),
            },
        )


# ═════════════════════════════════════════════════════════════════════════════
# Cinematographer
# ═════════════════════════════════════════════════════════════════════════════

def _video_output(name: str, result: dict, extra: dict) -> AdapterOutput:
    video = result.get("video") or {}
    if not video.get("url"):
        raise RuntimeError(f"{name} returned no video: {result}")
    return AdapterOutput(
        output_url=video["url"],
        metadata={
            "content_type": video.get("content_type") or "video/mp4",
            "file_size": video.get("file_size"),
            **extra,
        },
    )


class KlingVideoAdapter(ModelAdapter):
    stage = Stage.CINEMATOGRAPHER
    model_name = "fal-ai/kling-video/v2.6/pro/image-to-video"

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        cfg = input.config
        payload = {
            "image_url": input.input_url,
            "prompt": input.prompt or GENERIC_VIDEO_PROMPT,
            "duration": str(cfg.get("duration", "5")),
            "aspect_ratio": cfg.get("aspect_ratio", "16:9"),
            "negative_prompt": input.negative_prompt or "blur, distort, low quality, pixelated, shaky, text overlay",
        }
        logger.info(f"[{input.job_id}] Kling video generation (1-3 minutes)...")
        result = await self.client.subscribe(self.model_name, payload)
        return _video_output("Kling", result, {
            "duration": payload["duration"],
            "aspect_ratio": payload["aspect_ratio"],
        })


class WanVideoAdapter(ModelAdapter):
    stage = Stage.CINEMATOGRAPHER
    model_name = "fal-ai/wan-i2v"

    async def execute(self, input: AdapterInput) -> AdapterOutput:
        cfg = input.config
        payload = {
            "image_url": input.input_url,
            "prompt": input.prompt or "Subtle camera movement, cinematic lighting",
            "negative_prompt": input.negative_prompt,
            "num_frames": cfg.get("num_frames", 81),  # ~5s at 16fps
            "frames_per_second": cfg.get("frames_per_second", 16),
            "resolution": cfg.get("resolution", "720p"),
            "num_inference_steps": cfg.get("num_inference_steps", 30),
            "guide_scale": cfg.get("guide_scale", 5),
            "aspect_ratio": "auto",
        }
        logger.info(f"[{input.job_id}] Wan video generation")
        result = await self.client.subscribe(self.model_name, payload)
        return _video_output("Wan", result, {"seed": result.get("seed")})


def build_default_adapters(client: Optional[FalClient] = None) -> list[ModelAdapter]:
    """The fixed registry of models this process knows how to invoke."""
    client = client or FalClient()
    return [
        Florence2Adapter(client),
        BiRefNetAdapter(client),
        FluxFillAdapter(client),
        KlingVideoAdapter(client),
        WanVideoAdapter(client),
    ]
