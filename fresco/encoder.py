"""
Camera frame -> model input tensor.

Accepts RGB(A)/grayscale frames of any resolution, optionally centre-crops
them to the model's aspect ratio, resizes bilinearly, converts to the model's
channel count and lays the result out as NHWC or NCHW. Every call allocates a
fresh tensor; nothing is kept from the source buffer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover
    cv2 = None  # type: ignore

from .config import ModelIOSpec
from .errors import EncodingError
from .tensor import Layout, Tensor, parse_layout

__all__ = ["FrameToTensorEncoder", "encode", "to_rgb_image"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

FloatArray = NDArray[np.float32]
_SUPPORTED_SOURCE_CHANNELS = (1, 3, 4)
_SUPPORTED_TARGET_CHANNELS = (1, 3)


def _dims(width: Any, height: Any, what: str) -> Tuple[int, int]:
    try:
        return int(width), int(height)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"{what} dimensions must be integers, got {width!r}x{height!r}.") from exc


def to_rgb_image(pixels: Any, width: int, height: int) -> FloatArray:
    """
    Interpret ``pixels`` as a ``height x width`` RGB image (float32, native scale).

    ``pixels`` may be a 2-D/3-D array or a flat buffer holding 1, 3 or 4
    values per pixel. Alpha is dropped; grayscale is replicated to RGB.
    """
    if pixels is None:
        raise EncodingError("Frame buffer is missing.")
    width, height = _dims(width, height, "Frame")
    if width <= 0 or height <= 0:
        raise EncodingError(f"Frame dimensions must be positive, got {width}x{height}.")

    if isinstance(pixels, (bytes, bytearray, memoryview)):
        arr = np.frombuffer(pixels, dtype=np.uint8)
    else:
        try:
            arr = np.asarray(pixels)
        except (TypeError, ValueError) as exc:
            raise EncodingError(f"Frame buffer is not an array: {exc}") from exc
    if arr.size == 0:
        raise EncodingError("Frame buffer is empty.")

    if arr.ndim == 1:
        per_pixel, remainder = divmod(arr.size, width * height)
        if remainder or per_pixel not in _SUPPORTED_SOURCE_CHANNELS:
            raise EncodingError(
                f"Flat buffer of {arr.size} values does not describe a {width}x{height} image."
            )
        arr = arr.reshape(height, width, per_pixel)
    elif arr.ndim == 2:
        arr = arr[:, :, None]
    elif arr.ndim != 3:
        raise EncodingError(f"Unsupported frame array with {arr.ndim} dimensions.")

    if arr.shape[0] != height or arr.shape[1] != width:
        raise EncodingError(
            f"Frame is {arr.shape[1]}x{arr.shape[0]} but {width}x{height} was declared."
        )
    channels = arr.shape[2]
    if channels not in _SUPPORTED_SOURCE_CHANNELS:
        raise EncodingError(f"Frames need 1, 3 or 4 channels, got {channels}.")

    try:
        rgb = arr.astype(np.float32, copy=True)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Frame buffer of dtype {arr.dtype} is not numeric: {exc}") from exc
    if channels == 1:
        return np.repeat(rgb, 3, axis=2)
    return np.ascontiguousarray(rgb[:, :, :3])


def _center_crop(image: FloatArray, target_width: int, target_height: int) -> FloatArray:
    h, w = image.shape[:2]
    target_aspect = target_width / target_height
    if abs(w / h - target_aspect) < 1e-6:
        return image
    if w / h > target_aspect:
        new_w = max(1, int(round(h * target_aspect)))
        x0 = (w - new_w) // 2
        return image[:, x0 : x0 + new_w]
    new_h = max(1, int(round(w / target_aspect)))
    y0 = (h - new_h) // 2
    return image[y0 : y0 + new_h, :]


def _resize(image: FloatArray, target_width: int, target_height: int) -> FloatArray:
    h, w = image.shape[:2]
    if (w, h) == (target_width, target_height):
        return image.copy()
    if cv2 is None:
        raise EncodingError("OpenCV is required to resize frames (pip install opencv-python-headless).")
    resized = cv2.resize(np.ascontiguousarray(image), (target_width, target_height), interpolation=cv2.INTER_LINEAR)
    return np.asarray(resized, dtype=np.float32).reshape(target_height, target_width, 3)


def encode(
    pixels: Any,
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
    channel_count: int,
    layout: "Layout | str",
    normalize: bool = True,
    *,
    crop: bool = False,
    mean: Optional[Sequence[float]] = None,
    std: Optional[Sequence[float]] = None,
    name: Optional[str] = None,
) -> Tensor:
    """
    Build a ``(1,H,W,C)`` or ``(1,C,H,W)`` tensor from a raw frame.

    Pixel values are expected at native 0-255 scale; ``normalize`` maps them
    to [0,1] before the optional per-channel ``mean``/``std``.
    """
    target_width, target_height = _dims(target_width, target_height, "Target")
    channel_count = int(channel_count)
    if target_width <= 0 or target_height <= 0:
        raise EncodingError(f"Target dimensions must be positive, got {target_width}x{target_height}.")
    if channel_count not in _SUPPORTED_TARGET_CHANNELS:
        raise EncodingError(f"Models with {channel_count} input channels are not supported.")
    lay = parse_layout(layout)

    image = to_rgb_image(pixels, source_width, source_height)
    if crop:
        image = _center_crop(image, target_width, target_height)
    image = _resize(image, target_width, target_height)

    if channel_count == 1:
        image = (image.sum(axis=2, keepdims=True) / 3.0).astype(np.float32)

    if normalize:
        image *= np.float32(1.0 / 255.0)
    if mean is not None:
        image -= np.asarray(mean, dtype=np.float32).reshape(1, 1, -1)
    if std is not None:
        image /= np.asarray(std, dtype=np.float32).reshape(1, 1, -1)

    if lay is Layout.CHANNELS_LAST:
        data = image[None, ...]
    else:
        data = image.transpose(2, 0, 1)[None, ...]
    data = np.ascontiguousarray(data, dtype=np.float32)
    return Tensor(data, data.shape, lay, name=name)


@dataclass
class FrameToTensorEncoder:
    """Encoder bound to the current ``ModelIOSpec``; ``crop`` keeps aspect ratio."""

    crop: bool = False

    def encode(self, pixels: Any, width: int, height: int, spec: ModelIOSpec) -> Tensor:
        return encode(
            pixels,
            width,
            height,
            spec.input_width,
            spec.input_height,
            spec.input_channels,
            spec.layout,
            spec.normalize,
            crop=self.crop,
            mean=spec.mean,
            std=spec.std,
            name=spec.input_name,
        )
