"""Image decoding, resizing and re-encoding according to a preset."""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import Enum
from typing import Any

from PIL import Image

PROCESSOR_NAME = "pillow"

_DECODABLE_FORMATS = ("JPEG", "PNG", "GIF", "BMP", "TIFF")

_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}
_DEFAULT_MIME_TYPE = "image/jpeg"

_WHITE = (255, 255, 255)


class ImageFormat(str, Enum):
    """Output formats a preset can ask for."""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"


@dataclass
class ImagePreset:
    """Limits and target format for processed images."""

    max_width: int
    max_height: int
    quality: int
    format: ImageFormat = ImageFormat.JPEG
    preserve_aspect_ratio: bool = True


class ImageDecodeError(ValueError):
    """Raised when the input bytes are not a supported image."""


def _decode(image_data: bytes) -> tuple[Image.Image, str]:
    try:
        image = Image.open(io.BytesIO(image_data), formats=_DECODABLE_FORMATS)
        image.load()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"error decoding image: {exc}") from exc
    return image, (image.format or "").lower()


def _extension(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def guess_mimetype(filename: str) -> str:
    """Guess the MIME type from the file extension, defaulting to JPEG."""
    return _MIME_TYPES.get(_extension(filename).lower(), _DEFAULT_MIME_TYPE)


def should_process_image(image_data: bytes, preset: ImagePreset, size_threshold: int) -> bool:
    """Return False only for small images already in the target format and within limits."""
    if len(image_data) > size_threshold:
        return True
    try:
        image, fmt = _decode(image_data)
    except ImageDecodeError:
        return True
    width, height = image.size
    already_fine = (
        fmt == ImageFormat(preset.format).value
        and width <= preset.max_width
        and height <= preset.max_height
    )
    return not already_fine


def _fit_size(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    src_ratio = width / height
    if src_ratio > max_width / max_height:
        return max_width, max(1, int(max_width / src_ratio + 0.5))
    return max(1, int(max_height * src_ratio + 0.5)), max_height


def _resize(image: Image.Image, preset: ImagePreset) -> Image.Image:
    width, height = image.size
    if width <= preset.max_width and height <= preset.max_height:
        return image
    if preset.preserve_aspect_ratio:
        size = _fit_size(width, height, preset.max_width, preset.max_height)
    else:
        size = (preset.max_width, preset.max_height)
    if image.mode not in ("L", "LA", "RGB", "RGBA", "I", "F"):
        image = image.convert("RGBA" if _has_alpha(image) else "RGB")
    return image.resize(size, Image.Resampling.LANCZOS)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )


def _flatten_on_white(image: Image.Image) -> Image.Image:
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, _WHITE)
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _info(fmt: str, original: Image.Image, result: Image.Image, new_format: str,
          quality: Any) -> dict[str, Any]:
    return {
        "processor": PROCESSOR_NAME,
        "originalFormat": fmt,
        "newFormat": new_format,
        "originalWidth": original.width,
        "originalHeight": original.height,
        "newWidth": result.width,
        "newHeight": result.height,
        "quality": quality,
    }


def _clamp_quality(quality: int) -> int:
    return min(100, max(1, quality))


def process_to_jpeg(image_data: bytes, preset: ImagePreset) -> tuple[bytes, dict[str, Any]]:
    """Resize to the preset limits and encode as JPEG."""
    original, fmt = _decode(image_data)
    result = _resize(original, preset)
    if fmt == "png" and _has_alpha(result):
        result = _flatten_on_white(result)
    elif result.mode not in ("L", "RGB", "CMYK"):
        result = result.convert("RGB")
    buffer = io.BytesIO()
    result.save(buffer, format="JPEG", quality=_clamp_quality(preset.quality))
    return buffer.getvalue(), _info(fmt, original, result, "jpeg", preset.quality)


def process_to_png(image_data: bytes, preset: ImagePreset) -> tuple[bytes, dict[str, Any]]:
    """Resize to the preset limits and encode as lossless PNG."""
    original, fmt = _decode(image_data)
    result = _resize(original, preset)
    if result.mode not in ("1", "L", "LA", "I", "P", "RGB", "RGBA"):
        result = result.convert("RGBA" if _has_alpha(result) else "RGB")
    buffer = io.BytesIO()
    result.save(buffer, format="PNG")
    return buffer.getvalue(), _info(fmt, original, result, "png", "lossless")


def process_to_webp(image_data: bytes, preset: ImagePreset) -> tuple[bytes, dict[str, Any]]:
    """Resize to the preset limits and encode as lossy WebP."""
    original, fmt = _decode(image_data)
    result = _resize(original, preset)
    if result.mode not in ("RGB", "RGBA"):
        result = result.convert("RGBA" if _has_alpha(result) else "RGB")
    buffer = io.BytesIO()
    result.save(buffer, format="WEBP", quality=_clamp_quality(preset.quality), lossless=False)
    return buffer.getvalue(), _info(fmt, original, result, "webp", preset.quality)


def process_image(image_data: bytes, mimetype: str,
                  preset: ImagePreset) -> tuple[bytes, dict[str, Any]]:
    """Process an image into the preset's format; WebP and unknown formats become JPEG."""
    target = ImageFormat(preset.format)
    if target is ImageFormat.PNG:
        return process_to_png(image_data, preset)
    return process_to_jpeg(image_data, preset)