"""
Local image analysis that needs no network access.

Used when the vision model is unavailable or unusable. Tags come from colour
buckets, brightness, format, size and file-name words.
"""

import io
import logging
import re
from collections import Counter
from typing import List, Optional, Tuple

from PIL import Image
from starlette.concurrency import run_in_threadpool

from image_vault.analysis.models import AnalysisOutcome, AnalysisResult
from image_vault.analysis.parsing import HEURISTIC_TAG_LIMIT, normalize_tags

log = logging.getLogger(__name__)

SAMPLE_SIZE = (64, 64)

COMMON_OBJECTS = {
    "person", "car", "bicycle", "motorcycle", "bus", "truck", "boat", "airplane",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear",
    "chair", "couch", "bed", "table", "toilet", "tv", "laptop",
    "bottle", "glass", "cup", "fork", "knife", "spoon", "bowl",
    "banana", "apple", "sandwich", "orange", "broccoli", "carrot", "pizza",
    "book", "clock", "vase", "scissors",
}

SCENE_WORDS = {
    "indoor", "outdoor", "nature", "urban", "landscape", "portrait", "street",
    "beach", "mountain", "forest", "city", "home", "office", "restaurant",
    "park", "garden", "sky", "water", "building",
}

GENERIC_WORDS = {"img", "image", "pic", "photo", "picture", "screenshot", "untitled"}

# Extra tags implied by words in the file name
NAME_FAMILIES = (
    (("selfie",), ("selfie", "portrait", "person")),
    (("food", "meal"), ("food", "meal", "cooking")),
    (("nature", "landscape"), ("nature", "landscape", "outdoor")),
    (("pet", "dog", "cat"), ("pet", "animal")),
    (("vacation", "travel"), ("travel", "vacation", "trip")),
    (("work", "office"), ("work", "office", "professional")),
)

FORMAT_TAGS = (
    (("jpeg", "jpg"), ("jpeg", "photo", "compressed")),
    (("png",), ("png", "image", "transparent")),
    (("gif",), ("gif", "animated", "graphics")),
    (("webp",), ("webp", "modern", "optimized")),
    (("bmp",), ("bmp", "bitmap", "uncompressed")),
    (("tiff",), ("tiff", "high-quality", "professional")),
)

KB = 1024
MB = 1024 * 1024

def classify_pixel(r: int, g: int, b: int) -> List[str]:
    """Colour buckets a pixel counts towards; a pixel may match several."""
    buckets = []
    if r > 200 and g < 100 and b < 100:
        buckets.append("red")
    if r < 100 and g > 200 and b < 100:
        buckets.append("green")
    if r < 100 and g < 100 and b > 200:
        buckets.append("blue")
    if r > 200 and g > 200 and b < 100:
        buckets.append("yellow")
    if abs(r - g) < 30 and abs(g - b) < 30:
        buckets.append("grayscale")
    return buckets

def brightness_tag(mean: float) -> str:
    if mean < 85:
        return "dark"
    if mean > 170:
        return "bright"
    return "medium-light"

def size_tags(size: int) -> List[str]:
    if size <= 0:
        return []
    if size > 10 * MB:
        return ["large", "high-resolution", "detailed"]
    if size > 2 * MB:
        return ["medium", "good-quality"]
    if size < 100 * KB:
        return ["small", "thumbnail", "compressed"]
    return ["standard", "web-optimized"]

def format_tags(mime_type: str) -> List[str]:
    for needles, tags in FORMAT_TAGS:
        if any(needle in mime_type for needle in needles):
            return list(tags)
    return []

def name_words(file_name: Optional[str]) -> List[str]:
    if not file_name:
        return []
    stem = file_name.lower().rsplit("/", 1)[-1]
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    words = re.sub(r"[^a-z0-9]+", " ", stem).split()
    return [w for w in words if len(w) > 2 and w not in GENERIC_WORDS][:5]

def sample_pixels(image_bytes: bytes) -> Tuple[Optional[str], List[str], Optional[str]]:
    """
    Returns (detected mime type, dominant colours, brightness tag).

    Undecodable bytes give (None, [], None).
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            detected = Image.MIME.get(img.format) if img.format else None
            # Downscale before converting so only the sample is held as RGB
            img.draft("RGB", SAMPLE_SIZE)
            img.thumbnail(SAMPLE_SIZE)
            rgb = img.convert("RGB")
            data = rgb.tobytes()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        log.info("Heuristic analysis could not decode image: %s", e)
        return None, [], None

    counts: Counter = Counter()
    total = 0.0
    pixels = len(data) // 3
    for i in range(0, pixels * 3, 3):
        r, g, b = data[i], data[i + 1], data[i + 2]
        total += (r + g + b) / 3
        counts.update(classify_pixel(r, g, b))

    if not pixels:
        return detected, [], None
    dominant = [color for color, _ in sorted(counts.items(), key=lambda kv: -kv[1])[:3]]
    return detected, dominant, brightness_tag(total / pixels)

class HeuristicAnalyzer:
    """Fallback strategy; deterministic for a given input."""

    def describe(
        self,
        image_bytes: bytes,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> AnalysisResult:
        detected, colors, brightness = sample_pixels(image_bytes or b"")
        mime = (mime_type or detected or "image/jpeg").lower()
        size = file_size if file_size is not None else len(image_bytes or b"")
        words = name_words(file_name)

        tags: List[str] = list(colors)
        if brightness:
            tags.append(brightness)
        tags.extend(format_tags(mime))
        tags.extend(size_tags(size))
        tags.extend(words)
        for triggers, implied in NAME_FAMILIES:
            if any(t in words for t in triggers):
                tags.extend(implied)

        fmt = mime.split("/")[-1] or "image"
        size_info = f" ({size / MB:.1f}MB)" if size > 0 else ""
        color_info = f" with predominant {', '.join(colors)} colors" if colors else ""
        brightness_info = f" and {brightness} tones" if brightness else ""
        description = f"A {fmt} file{size_info}{color_info}{brightness_info} uploaded to the system."

        objects = [w for w in words if w in COMMON_OBJECTS][:3]
        if objects:
            description += f" This image appears to contain {', '.join(objects)}."
        scenes = [w for w in words if w in SCENE_WORDS][:2]
        if scenes:
            description += f" The scene appears to be {' and '.join(scenes)}."
        description += " This visual content can be searched and organized using the generated tags."

        return AnalysisResult(
            description=description,
            tags=normalize_tags(tags, limit=HEURISTIC_TAG_LIMIT),
            source="heuristic",
        )

    async def analyze(
        self,
        image_bytes: bytes,
        mime_type: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> AnalysisOutcome:
        try:
            result = await run_in_threadpool(
                self.describe, image_bytes, mime_type, file_name, file_size
            )
            return AnalysisOutcome.success(result)
        except (TypeError, ValueError) as e:
            log.error("Heuristic analysis failed: %s", e)
            return AnalysisOutcome.failure(f"Heuristic analysis failed: {e}")
