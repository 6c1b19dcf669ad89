import pytest

from studio.presets import (
    DEFAULT_DIMENSIONS,
    PRESETS,
    dimensions_for,
    get_preset,
    inserted_slide_prompt,
    slide_style_suffix,
    video_motion_prompt,
)


def test_default_workflow():
    assert get_preset(None)["id"] == "jesus"


def test_unknown_workflow():
    with pytest.raises(ValueError):
        get_preset("tiktok-dance")


def test_style_suffix_prefers_explicit_style():
    assert slide_style_suffix("slideshow", "watercolor") == ", watercolor"
    assert slide_style_suffix("slideshow") == f", {PRESETS['slideshow']['image_style']}"


def test_inserted_slide_prompt():
    assert inserted_slide_prompt("ugc-slideshow") == PRESETS["ugc-slideshow"]["insert_prompt"]
    assert inserted_slide_prompt("slideshow", "moody") == "moody"
    assert inserted_slide_prompt("slideshow") == "artistic"


def test_dimensions():
    assert dimensions_for("16:9") == (1280, 720)
    assert dimensions_for("21:9") == DEFAULT_DIMENSIONS


def test_every_preset_has_motion_prompt():
    for workflow in PRESETS:
        assert video_motion_prompt(workflow)
