"""Handling of image-processing requests received from the broker."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from imgqueue.connection import BrokerSettings, ConnectionError_, RabbitMQConnection
from imgqueue.logging_setup import get_logger
from imgqueue.transform import (
    ImageDecodeError,
    ImageFormat,
    ImagePreset,
    guess_mimetype,
    process_image,
    should_process_image,
)

NEST_PATTERN = "images-to-process"
DEFAULT_PRESET = "default"

_log = get_logger("processor")

_STRING_FIELDS = {
    "id": "id",
    "filename": "filename",
    "companyId": "company_id",
    "userId": "user_id",
    "module": "module",
    "preset": "preset",
    "format": "format",
    "mimetype": "mimetype",
    "type": "type",
    "command": "command",
}
_INT_FIELDS = {
    "maxWidth": "max_width",
    "maxHeight": "max_height",
    "quality": "quality",
}
_PAYLOAD_FIELDS = ("data", "buffer", "content")

_FORMAT_ALIASES = {
    "jpeg": ImageFormat.JPEG,
    "jpg": ImageFormat.JPEG,
    "png": ImageFormat.PNG,
    "webp": ImageFormat.WEBP,
    "gif": ImageFormat.GIF,
}

_PROCESSING_ERRORS = (ImageDecodeError, OSError, ValueError)


class ProcessorType(str, Enum):
    """Names of image processors reported in response info."""

    PILLOW = "pillow"
    PILLOW_OPTIMIZED = "pillow-optimized"
    OPENCV = "opencv"
    OPENCV_ADVANCED = "opencv-advanced"
    NONE = "none"


class ImageDataError(ValueError):
    """Raised when a message carries no usable image data."""


@dataclass
class Message:
    """An image-processing request."""

    id: str = ""
    filename: str = ""
    data: Any = None
    buffer: Any = None
    content: Any = None
    company_id: str = ""
    user_id: str = ""
    module: str = ""
    preset: str = ""
    max_width: int = 0
    max_height: int = 0
    quality: int = 0
    format: str = ""
    mimetype: str = ""
    type: str = ""
    command: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        """Build a message from decoded JSON, checking field types."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError(f"message must be a JSON object, not {type(data).__name__}")
        values: dict[str, Any] = {}
        for key, attr in _STRING_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"field {key!r} must be a string")
            values[attr] = value
        for key, attr in _INT_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"field {key!r} must be an integer")
            values[attr] = value
        for key in _PAYLOAD_FIELDS:
            values[key] = data.get(key)
        return cls(**values)


@dataclass
class Response:
    """The result sent back for a processed request."""

    id: str
    processed: bool
    success: bool
    filename: str = ""
    company_id: str = ""
    user_id: str = ""
    module: str = ""
    original_size: int = 0
    processed_size: int = 0
    reduction: str = ""
    info: dict[str, Any] | None = None
    duration: str = ""
    error: str = ""
    data: str = ""

    def to_json(self) -> str:
        """Serialise to compact JSON, leaving out empty optional fields."""
        payload: dict[str, Any] = {"id": self.id, "processed": self.processed}
        optional = (
            ("filename", self.filename),
            ("companyId", self.company_id),
            ("userId", self.user_id),
            ("module", self.module),
            ("originalSize", self.original_size),
            ("processedSize", self.processed_size),
            ("reduction", self.reduction),
            ("info", dict(sorted(self.info.items())) if self.info else None),
            ("duration", self.duration),
        )
        payload.update((key, value) for key, value in optional if value)
        payload["success"] = self.success
        payload.update((key, value) for key, value in (("error", self.error), ("data", self.data)) if value)
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def parse_message(body: bytes | str) -> Message:
    """Parse a request body, unwrapping the pattern/data envelope when present."""
    payload: Any = json.loads(body)
    if (
        isinstance(payload, dict)
        and payload.get("pattern") == NEST_PATTERN
        and "data" in payload
    ):
        _log.debug("envelope-format message received")
        payload = payload["data"]
    else:
        _log.debug("direct-format message received")
    return Message.from_dict(payload)


def _b64decode(text: str) -> bytes:
    cleaned = text.replace("\r", "").replace("\n", "")
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDataError(f"invalid base64 data: {exc}") from exc


def extract_image_data(message: Message) -> bytes:
    """Return the image bytes carried by the buffer, data or content field."""
    payload = next(
        (value for value in (message.buffer, message.data, message.content) if value is not None),
        None,
    )
    if payload is None:
        raise ImageDataError("no image data found in message")
    if isinstance(payload, str):
        if "," in payload:
            payload = payload.split(",", 1)[1]
        return _b64decode(payload)
    if isinstance(payload, Mapping):
        encoded = payload.get("data")
        if isinstance(encoded, str):
            return _b64decode(encoded)
        raise ImageDataError("unrecognised data format")
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    raise ImageDataError("unsupported data format")


def _duration(start: float) -> str:
    milliseconds = int((time.perf_counter() - start) * 1000)
    return f"{float(milliseconds):.2f}ms"


def _positive_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


class ImageProcessor:
    """Turns request messages into processed images and publishes responses."""

    def __init__(
        self,
        connection: Any,
        presets: Mapping[str, ImagePreset],
        size_threshold: int,
        queue_out: str | None = None,
    ) -> None:
        if DEFAULT_PRESET not in presets:
            raise ValueError(f"presets must include a {DEFAULT_PRESET!r} preset")
        self.connection = connection
        self.presets = dict(presets)
        self.size_threshold = size_threshold
        self.queue_out = queue_out if queue_out is not None else BrokerSettings().queue_out
        self._url: str | None = getattr(connection, "url", None)
        self._settings: BrokerSettings | None = getattr(connection, "settings", None)

    def get_preset_from_options(self, options: Mapping[str, Any]) -> ImagePreset:
        """Pick the named preset (or the default) and apply per-request overrides."""
        name = options.get("imagePreset")
        if not isinstance(name, str) or not name:
            name = DEFAULT_PRESET
        base = self.presets.get(name)
        if base is None or base.max_width == 0:
            base = self.presets[DEFAULT_PRESET]
        preset = dataclasses.replace(base)

        if (width := _positive_int(options.get("maxWidth"))) is not None:
            preset.max_width = width
        if (height := _positive_int(options.get("maxHeight"))) is not None:
            preset.max_height = height
        if (quality := _positive_int(options.get("quality"))) is not None:
            preset.quality = quality
        fmt = options.get("format")
        if isinstance(fmt, str) and fmt:
            preset.format = _FORMAT_ALIASES.get(fmt.lower(), preset.format)
        return preset

    def process_message(self, body: bytes | str, delivery: Any) -> None:
        """Handle one request; raises when the message cannot be processed."""
        _log.info("message received: %d bytes", len(body))
        start = time.perf_counter()
        correlation_id = getattr(delivery, "correlation_id", "") or ""

        try:
            message = parse_message(body)
        except ValueError as exc:
            _log.error("could not decode message JSON: %s", exc)
            raise

        if message.command == "cleanup":
            _log.info("cleanup message received, skipping image processing")
            return

        message_id = message.id or "unknown"
        filename = message.filename or "image.jpg"
        _log.info("processing image: id=%s, file=%s", message_id, filename)

        try:
            image_data = extract_image_data(message)
        except ImageDataError as exc:
            _log.error("could not extract image data: %s", exc)
            self.send_error_response(
                message_id, filename, f"error extracting image data: {exc}", correlation_id
            )
            raise

        company_id = message.company_id or "default"
        user_id = message.user_id or "anonymous"
        module = message.module or "general"

        preset = self.get_preset_from_options(
            {
                "imagePreset": message.preset or DEFAULT_PRESET,
                "maxWidth": message.max_width,
                "maxHeight": message.max_height,
                "quality": message.quality,
                "format": message.format,
            }
        )
        mimetype = message.mimetype or message.type or guess_mimetype(filename)
        original_size = len(image_data)

        def respond(processed: bool, processed_size: int, reduction: str,
                    info: dict[str, Any] | None) -> None:
            self.send_response(
                Response(
                    id=message_id,
                    processed=processed,
                    success=True,
                    filename=filename,
                    company_id=company_id,
                    user_id=user_id,
                    module=module,
                    original_size=original_size,
                    processed_size=processed_size,
                    reduction=reduction,
                    info=info,
                    duration=_duration(start),
                ),
                correlation_id,
            )

        if not should_process_image(image_data, preset, self.size_threshold):
            _log.info("image %s needs no processing, sending unchanged", filename)
            respond(
                False,
                original_size,
                "0%",
                {"processor": ProcessorType.NONE.value, "reason": "image already optimal"},
            )
            return

        try:
            processed_data, info = process_image(image_data, mimetype, preset)
        except _PROCESSING_ERRORS as exc:
            _log.error("could not process image: %s", exc)
            self.send_error_response(
                message_id, filename, f"error processing image: {exc}", correlation_id
            )
            raise

        processed_size = len(processed_data)
        if processed_size >= original_size:
            _log.info("image %s processed without gain, keeping original", filename)
            respond(True, original_size, "0%", info)
            return

        reduction = (original_size - processed_size) / original_size * 100
        _log.info(
            "image processed: %s - reduction %.2f%%, size %.2fKB -> %.2fKB",
            filename, reduction, original_size / 1024, processed_size / 1024,
        )
        respond(True, processed_size, f"{reduction:.2f}%", info)

    def _ensure_connection(self) -> bool:
        if self.connection is not None and self.connection.is_connected():
            return True
        _log.warning("connection unavailable, reconnecting to send response")
        if self._url is None:
            _log.error("no broker URL known, cannot send response")
            return False
        connection = RabbitMQConnection(self._url, self._settings)
        try:
            connection.connect()
        except ConnectionError_ as exc:
            _log.error("could not reconnect to send response: %s", exc)
            return False
        self.connection = connection
        return True

    def send_response(self, response: Response, correlation_id: str = "") -> bool:
        """Publish a response to the output queue; return whether it was sent."""
        body = response.to_json().encode("utf-8")
        if not self._ensure_connection():
            return False
        try:
            self.connection.publish_message(self.queue_out, body, correlation_id)
        except ConnectionError_ as exc:
            _log.error("could not send response: %s", exc)
            return False
        _log.info("response sent to queue %s", self.queue_out)
        return True

    def send_error_response(self, message_id: str, filename: str, error_message: str,
                            correlation_id: str = "") -> bool:
        """Publish a failure response for the given request."""
        return self.send_response(
            Response(
                id=message_id,
                processed=False,
                success=False,
                filename=filename,
                error=error_message,
            ),
            correlation_id,
        )