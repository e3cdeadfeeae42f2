"""Screenshot preparation for vision model input."""
from __future__ import annotations

import base64
import io

from PIL import Image

MAX_FILE_SIZE = 5_242_880  # 5 MB per image


def _to_rgb(image: Image.Image) -> Image.Image:
    if image.mode == "RGBA":
        rgb = Image.new("RGB", image.size, (255, 255, 255))
        rgb.paste(image, mask=image.split()[3])
        return rgb
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def cap_dimensions(image: Image.Image, max_dimension: int) -> Image.Image:
    """Scale down so neither side exceeds `max_dimension`, keeping aspect ratio."""
    width, height = image.size
    if width <= max_dimension and height <= max_dimension:
        return image
    if width > height:
        size = (max_dimension, int(height * (max_dimension / width)))
    else:
        size = (int(width * (max_dimension / height)), max_dimension)
    return image.resize(size, Image.Resampling.LANCZOS)


def prepare_screenshot(
    screenshot_bytes: bytes,
    max_dimension: int = 7500,
    max_file_size: int = MAX_FILE_SIZE,
) -> str:
    """Resize and JPEG-compress a screenshot; returns base64 text.

    Full-page captures of long pages exceed the model's per-image pixel limit,
    so they are scaled down before being sent.
    """
    image = _to_rgb(cap_dimensions(Image.open(io.BytesIO(screenshot_bytes)), max_dimension))

    quality = 90
    buffer = io.BytesIO()
    while quality > 20:
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        if buffer.tell() <= max_file_size:
            break
        quality -= 10

    scale = 0.8
    while buffer.tell() > max_file_size and scale > 0.3:
        resized = image.resize(
            (int(image.width * scale), int(image.height * scale)), Image.Resampling.LANCZOS
        )
        buffer = io.BytesIO()
        resized.save(buffer, format="JPEG", quality=75, optimize=True)
        scale -= 0.1

    return base64.b64encode(buffer.getvalue()).decode("utf-8")
