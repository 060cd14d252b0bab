import io
import os
import pytest
from PIL import Image

from image_vault.analysis.heuristic import (
    HeuristicAnalyzer,
    brightness_tag,
    classify_pixel,
    name_words,
    sample_pixels,
    size_tags,
)
from conftest import make_png_bytes


def test_classify_pixel_buckets():
    assert classify_pixel(255, 0, 0) == ["red"]
    assert classify_pixel(0, 255, 0) == ["green"]
    assert classify_pixel(0, 0, 255) == ["blue"]
    assert classify_pixel(255, 255, 0) == ["yellow"]
    assert classify_pixel(128, 130, 120) == ["grayscale"]
    assert classify_pixel(150, 60, 200) == []


def test_brightness_buckets():
    assert brightness_tag(10) == "dark"
    assert brightness_tag(85) == "medium-light"
    assert brightness_tag(200) == "bright"


def test_size_buckets():
    assert size_tags(0) == []
    assert size_tags(50 * 1024) == ["small", "thumbnail", "compressed"]
    assert size_tags(500 * 1024) == ["standard", "web-optimized"]
    assert size_tags(3 * 1024 * 1024) == ["medium", "good-quality"]
    assert size_tags(11 * 1024 * 1024) == ["large", "high-resolution", "detailed"]


def test_name_words_skips_generic_and_short_words():
    assert name_words("IMG_2041 my dog at the beach.JPG") == ["2041", "dog", "the", "beach"]
    assert name_words("photo.png") == []
    assert name_words(None) == []


def test_sample_pixels_red_image():
    mime, colors, brightness = sample_pixels(make_png_bytes("red", (1, 1)))
    assert mime == "image/png"
    assert colors == ["red"]
    assert brightness == "medium-light"


def test_sample_pixels_white_image_is_bright_grayscale():
    _, colors, brightness = sample_pixels(make_png_bytes("white", (20, 20)))
    assert colors == ["grayscale"]
    assert brightness == "bright"


def test_sample_pixels_converts_only_the_downscaled_image(mocker):
    convert = mocker.spy(Image.Image, "convert")
    data = make_png_bytes("blue", (2000, 1200))

    _, colors, _ = sample_pixels(data)

    assert colors == ["blue"]
    assert convert.call_count >= 1
    assert all(max(c.args[0].size) <= 64 for c in convert.call_args_list)


def test_sample_pixels_palette_image():
    img = Image.new("P", (300, 300))
    img.putpalette([255, 255, 0] * 256)
    buf = io.BytesIO()
    img.save(buf, format="PNG")

    mime, colors, _ = sample_pixels(buf.getvalue())

    assert mime == "image/png"
    assert colors == ["yellow"]


def test_sample_pixels_undecodable_bytes():
    assert sample_pixels(b"definitely not an image") == (None, [], None)


def test_describe_composes_tags_and_description():
    data = make_png_bytes("red", (4, 4))
    result = HeuristicAnalyzer().describe(data, "image/png", "dog in the park.png", len(data))

    assert result.source == "heuristic"
    assert result.tags[:2] == ["red", "medium-light"]
    assert "png" in result.tags
    assert "small" in result.tags
    assert "dog" in result.tags and "pet" in result.tags
    assert "A png file" in result.description
    assert "predominant red colors" in result.description
    assert "appears to contain dog" in result.description
    assert "The scene appears to be park" in result.description


def test_describe_is_deterministic():
    data = make_png_bytes("blue", (8, 8))
    analyzer = HeuristicAnalyzer()
    assert analyzer.describe(data, "image/png", "x.png") == analyzer.describe(data, "image/png", "x.png")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    b"",
    b"\x00\x01\x02garbage",
    os.urandom(256),
    make_png_bytes("yellow", (3, 3)),
])
async def test_analyze_always_produces_valid_result(payload):
    outcome = await HeuristicAnalyzer().analyze(payload, None, "holiday food.jpeg")
    assert outcome.ok
    result = outcome.result
    assert result.description
    assert len(result.tags) <= 15
    assert all(tag == tag.lower() for tag in result.tags)
    assert len(set(result.tags)) == len(result.tags)
