"""
Workflow Presets: style suffixes and motion prompts per studio workflow.
Users pick a workflow, we inject the actual image style / video motion prompt.
"""

from typing import Optional

DEFAULT_WORKFLOW = "jesus"

PRESETS = {
    "jesus": {
        "id": "jesus",
        "name": "Faith Visuals",
        "image_style": "tumblr aesthetic, film photography, disposable camera, high ISO grain",
        "video_prompt": "Smooth cinematic motion, subtle animation, professional quality",
    },
    "ugc": {
        "id": "ugc",
        "name": "UGC Selfie",
        "image_style": "tumblr aesthetic, film photography, disposable camera, high ISO grain",
        "video_prompt": (
            "Selfie video, subtle handheld camera movement, natural smartphone "
            "recording feel, slight breathing motion"
        ),
    },
    "slideshow": {
        "id": "slideshow",
        "name": "Slideshow",
        "image_style": "tumblr aesthetic, film photography, disposable camera, high ISO grain",
        "video_prompt": "Smooth cinematic motion, subtle animation, professional quality",
    },
    "ugc-slideshow": {
        "id": "ugc-slideshow",
        "name": "UGC Slideshow",
        "image_style": "low quality photo, amateur photography",
        "insert_prompt": (
            "tumblr aesthetic, grainy film photography, disposable camera flash, "
            "heavy ISO grain, 2010s tumblr"
        ),
        "video_prompt": "Smooth cinematic motion, subtle animation, professional quality",
    },
    "6-verses": {
        "id": "6-verses",
        "name": "Six Verses",
        "image_style": (
            "Disney 2D animation style, hand drawn animation, classic Disney art style, "
            "traditional cel animation, Disney Renaissance era, painted backgrounds, "
            "expressive linework, vibrant colors, storybook illustration, NOT 3D, NOT Pixar, "
            "NOT CGI, no text, no words, no captions"
        ),
        "video_prompt": "Smooth cinematic motion, subtle animation, professional quality",
    },
}

# Width x height per aspect ratio for free-form image generation
ASPECT_DIMENSIONS = {
    "9:16": (720, 1280),
    "16:9": (1280, 720),
    "4:3": (1024, 768),
}
DEFAULT_DIMENSIONS = (1024, 1024)

# Slideshow slides are always portrait, full HD
SLIDE_DIMENSIONS = (1080, 1920)


def get_preset(workflow: Optional[str]) -> dict:
    """Get the preset for a workflow. Raises if the workflow is unknown."""
    preset = PRESETS.get(workflow or DEFAULT_WORKFLOW)
    if not preset:
        raise ValueError(f"Unknown workflow: {workflow}. Available: {list(PRESETS.keys())}")
    return preset


def dimensions_for(aspect_ratio: str) -> tuple[int, int]:
    return ASPECT_DIMENSIONS.get(aspect_ratio, DEFAULT_DIMENSIONS)


def slide_style_suffix(workflow: Optional[str], style: Optional[str] = None) -> str:
    """Suffix appended to a slide's image prompt; an explicit style wins over the preset."""
    return f", {style or get_preset(workflow)['image_style']}"


def inserted_slide_prompt(workflow: Optional[str], style: Optional[str] = None) -> str:
    """Prompt for a slide added after the fact, when there is no slide-specific prompt."""
    preset = get_preset(workflow)
    if "insert_prompt" in preset:
        return preset["insert_prompt"]
    return style or "artistic"


def video_motion_prompt(workflow: Optional[str]) -> str:
    return get_preset(workflow)["video_prompt"]
