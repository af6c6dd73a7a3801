"""
Output tensor -> binary wall mask.

Three read modes:

* threshold  - the target channel's activation is compared with a threshold;
* argmax     - the pixel belongs to the target when its channel wins;
* class map  - single-channel outputs already hold class IDs (argmax applied
               in the graph); values are rounded and compared for equality.

Element addressing follows the layout: channel-last ``y*W*C + x*C + c``,
channel-first ``c*H*W + y*W + x``. Shape problems raise ``ShapeMismatch``
carrying a factorization diagnosis instead of yielding a blank mask.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from .errors import FormatMismatch, InvalidShape, ShapeMismatch
from .mask import MASK_OFF, MASK_ON, SegmentationMask
from .shapes import describe_diagnosis, diagnose_shape_mismatch, spatial_dims
from .tensor import Layout, Tensor, parse_layout

__all__ = ["TensorToMaskDecoder", "channel_index", "decode"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

NDArrayF32 = NDArray[np.float32]


def channel_index(x: Any, y: Any, c: int, width: int, height: int, channels: int, layout: "Layout | str") -> Any:
    """Flat index of ``(x, y, c)`` for batch 0; ``x``/``y`` may be index arrays."""
    if parse_layout(layout) is Layout.CHANNELS_LAST:
        return y * width * channels + x * channels + c
    return c * height * width + y * width + x


def _mismatch(
    message: str,
    tensor: Tensor,
    class_count: int,
    layout: Layout,
    target_aspect: Optional[float],
) -> ShapeMismatch:
    diagnosis = diagnose_shape_mismatch(
        tensor.size,
        max(1, class_count),
        target_aspect=target_aspect,
        preferred_layout=layout,
    )
    for line in describe_diagnosis(diagnosis, limit=5):
        LOGGER.warning("decoder.shape.diagnosis %s", line)
    if diagnosis.format_mismatch:
        return FormatMismatch(message, diagnosis=diagnosis)
    return ShapeMismatch(message, diagnosis=diagnosis)


def decode(
    tensor: Tensor,
    shape: Sequence[int],
    layout: "Layout | str",
    target_class_id: int,
    threshold: float,
    *,
    mode: str = "threshold",
    expected_class_count: Optional[int] = None,
    target_aspect: Optional[float] = None,
) -> SegmentationMask:
    """
    Produce a mask with the spatial size of ``shape``.

    ``expected_class_count``/``target_aspect`` only feed the diagnosis
    attached to ``ShapeMismatch``.
    """
    lay = parse_layout(layout)
    dims = tuple(int(d) for d in shape)
    target = int(target_class_id)
    diag_classes = int(expected_class_count) if expected_class_count else (dims[-1] if dims else 1)

    if len(dims) < 3:
        raise _mismatch(
            f"Output shape {dims} has fewer than 3 dimensions.", tensor, diag_classes, lay, target_aspect
        )
    if math.prod(dims) != tensor.size:
        raise _mismatch(
            f"Output shape {dims} does not describe the {tensor.size}-element buffer.",
            tensor,
            diag_classes,
            lay,
            target_aspect,
        )
    try:
        height, width, channels = spatial_dims(dims, lay)
    except InvalidShape as exc:
        raise _mismatch(str(exc), tensor, diag_classes, lay, target_aspect) from exc

    values = tensor.data.reshape(dims)[0]
    if channels == 1:
        class_map = values.reshape(height, width)
        hits = np.rint(class_map) == target
    else:
        if target < 0 or target >= channels:
            raise _mismatch(
                f"Target class {target} is outside the {channels}-channel output.",
                tensor,
                diag_classes,
                lay,
                target_aspect,
            )
        if mode == "argmax":
            planes: NDArrayF32 = values if lay is Layout.CHANNELS_LAST else np.moveaxis(values, 0, -1)
            hits = np.argmax(planes, axis=-1) == target
        else:
            ys, xs = np.indices((height, width))
            scores = tensor.data[channel_index(xs, ys, target, width, height, channels, lay)]
            hits = scores >= np.float32(threshold)

    data = np.where(hits, np.uint8(MASK_ON), np.uint8(MASK_OFF)).astype(np.uint8)
    return SegmentationMask(data, class_id=target)


@dataclass
class TensorToMaskDecoder:
    """Decoder with a default read mode; see :func:`decode`."""

    mode: str = "threshold"

    def decode(
        self,
        tensor: Tensor,
        shape: Sequence[int],
        layout: "Layout | str",
        target_class_id: int,
        threshold: float,
        *,
        mode: Optional[str] = None,
        expected_class_count: Optional[int] = None,
        target_aspect: Optional[float] = None,
    ) -> SegmentationMask:
        return decode(
            tensor,
            shape,
            layout,
            target_class_id,
            threshold,
            mode=mode or self.mode,
            expected_class_count=expected_class_count,
            target_aspect=target_aspect,
        )
