"""
Client for the image-gen service (Replicate proxy).

POST {IMAGE_GEN_URL}/api/replicate  {model, input}  →  {output}

`output` is a URL string or a list of URL strings depending on the model.
Every model family wants its inputs in a slightly different shape; the
build_* helpers below do that mapping. No retries here: a failed generation
is terminal for its asset, the caller resubmits if it wants another go.
"""

import os
import logging
from typing import Any, Optional

import httpx

from .errors import GenerationFailed
from ..presets import DEFAULT_DIMENSIONS

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

IMAGE_GEN_URL = os.getenv("IMAGE_GEN_URL", "https://cc-image-gen-service-production.up.railway.app")
IMAGE_TIMEOUT_SECONDS = float(os.getenv("IMAGE_TIMEOUT_SECONDS", "600"))    # 10 min
VIDEO_TIMEOUT_SECONDS = float(os.getenv("VIDEO_TIMEOUT_SECONDS", "1500"))   # 25 min

DEFAULT_IMAGE_MODEL = os.getenv("DEFAULT_IMAGE_MODEL", "black-forest-labs/flux-1.1-pro-ultra")
DEFAULT_VIDEO_MODEL = os.getenv("DEFAULT_VIDEO_MODEL", "pixverse/pixverse-v4.5")

# Models that take aspect_ratio instead of width/height
DIMENSION_ASPECT_RATIOS = {
    (720, 1280): "9:16",
    (1080, 1920): "9:16",
    (1280, 720): "16:9",
    (1024, 1024): "1:1",
    (1024, 768): "4:3",
    (768, 1024): "3:4",
    (2048, 2048): "1:1",
    (2560, 1600): "16:10",
}
IMAGEN_ASPECT_RATIOS = {
    k: v for k, v in DIMENSION_ASPECT_RATIOS.items() if k not in ((2048, 2048), (2560, 1600))
}


# ── Input shaping ────────────────────────────────────────────────────────────

def build_image_input(prompt: str, model: str, options: Optional[dict] = None) -> dict:
    """Map generic {width, height, num_outputs, ...} options onto the model's input schema."""
    options = options or {}
    width = options.get("width") or DEFAULT_DIMENSIONS[0]
    height = options.get("height") or DEFAULT_DIMENSIONS[1]

    if "flux-1.1-pro-ultra" in model:
        return {
            "prompt": prompt,
            "aspect_ratio": DIMENSION_ASPECT_RATIOS.get((width, height), "1:1"),
            "raw": options.get("raw", False),
            "safety_tolerance": options.get("safety_tolerance") or 3,
            "output_format": options.get("output_format") or "png",
        }

    if "imagen-4" in model:
        return {
            "prompt": prompt,
            "aspect_ratio": IMAGEN_ASPECT_RATIOS.get((width, height), "1:1"),
            "safety_filter_level": "block_medium_and_above",
        }

    payload: dict[str, Any] = {
        "prompt": prompt,
        "width": width,
        "height": height,
        "num_outputs": options.get("num_outputs") or 1,
    }
    if "flux-schnell" in model:
        # Schnell tops out at 4 steps
        payload["num_inference_steps"] = min(options.get("num_inference_steps") or 4, 4)
    else:
        payload["negative_prompt"] = options.get("negative_prompt")
        payload["guidance_scale"] = options.get("guidance_scale") or 7.5
        payload["num_inference_steps"] = options.get("num_inference_steps") or 25

    if "kontext" in model and options.get("reference_image"):
        payload["reference_image"] = options["reference_image"]
        payload["style_reference"] = options.get("style_reference")
    return payload


def build_video_input(source_image_url: str, model: str, options: Optional[dict] = None) -> dict:
    options = options or {}

    if "pixverse" in model:
        return {
            "image": source_image_url,
            "prompt": options.get("prompt") or "cinematic motion, smooth camera movement",
            "quality": options.get("quality") or "720p",
            "aspect_ratio": options.get("aspect_ratio") or "16:9",
            "duration": options.get("duration") or 5,
            "motion_mode": options.get("motion_mode") or "normal",
            "negative_prompt": options.get("negative_prompt") or "",
            "style": options.get("style") or "None",
            "effect": options.get("effect") or "None",
        }

    if "wan-2.1" in model:
        payload = {
            "image": source_image_url,
            "prompt": options.get("prompt") or "the image comes to life with natural motion",
            "num_frames": options.get("num_frames") or 81,
            "max_area": options.get("max_area") or "1280x720",
            "frames_per_second": options.get("fps") or 16,
            "sample_steps": options.get("sample_steps") or 30,
            "sample_guide_scale": options.get("sample_guide_scale") or 6,
            "sample_shift": options.get("sample_shift") or 8,
        }
        if options.get("fast_mode"):
            payload["fast_mode"] = options["fast_mode"]
        return payload

    # Legacy Stable Video Diffusion
    return {
        "input_image": source_image_url,
        "fps": options.get("fps") or 25,
        "motion_bucket_id": options.get("motion_bucket_id") or 127,
        "cond_aug": options.get("cond_aug") or 0.02,
    }


def video_options_for(model: str, aspect_ratio: str, quality: str = "720p", duration: int = 5) -> dict:
    """Default per-model options for image-to-video when the caller sends none."""
    if "pixverse" in model:
        return {
            "quality": quality,
            "duration": duration,
            "aspect_ratio": aspect_ratio if aspect_ratio in ("9:16", "16:9") else "1:1",
            "motion_mode": "normal",
        }
    if "wan-2.1" in model:
        return {"num_frames": 81, "fps": 16}
    return {}


def _urls_from_output(data: Any) -> list[str]:
    """Normalise {output: str | [str]} / {urls: [...]} / {url: str} into a URL list."""
    if not isinstance(data, dict):
        return []
    output = data.get("output", data.get("urls", data.get("url")))
    if isinstance(output, str):
        return [output] if output else []
    if isinstance(output, list):
        return [u for u in output if isinstance(u, str) and u]
    return []


# ── Clients ──────────────────────────────────────────────────────────────────

class _ReplicateProxy:
    def __init__(
        self,
        base_url: str = IMAGE_GEN_URL,
        timeout: float = IMAGE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _run(self, model: str, payload: dict) -> list[str]:
        url = f"{self.base_url}/api/replicate"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json={"model": model, "input": payload})
        except httpx.TimeoutException as e:
            raise GenerationFailed(f"{model} timed out: {e}", code="timeout") from e
        except httpx.TransportError as e:
            raise GenerationFailed(f"Image service not reachable: {e}", code="transport_error") from e

        if resp.status_code >= 300:
            raise GenerationFailed(
                f"Image service error {resp.status_code}: {resp.text[:300]}",
                code=f"http_{resp.status_code}",
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationFailed(f"Non-JSON response from {model}", code="malformed_response") from e

        urls = _urls_from_output(data)
        if not urls:
            raise GenerationFailed(f"No output URL from {model}: {str(data)[:200]}", code="malformed_response")
        return urls


class ImageGenerator(_ReplicateProxy):
    async def generate(self, prompt: str, model: str, options: Optional[dict] = None) -> list[str]:
        """Generate image(s); returns at least one URL or raises GenerationFailed."""
        payload = build_image_input(prompt, model, options)
        logger.info(f"Image generation: model={model}, prompt={prompt[:80]}")
        return await self._run(model, payload)


class VideoGenerator(_ReplicateProxy):
    def __init__(
        self,
        base_url: str = IMAGE_GEN_URL,
        timeout: float = VIDEO_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)

    async def generate(self, source_image_url: str, model: str, options: Optional[dict] = None) -> str:
        """Animate a source image; returns the video URL or raises GenerationFailed."""
        payload = build_video_input(source_image_url, model, options)
        logger.info(f"Video generation: model={model}, source={source_image_url[:80]}")
        return (await self._run(model, payload))[0]
