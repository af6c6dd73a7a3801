"""Single-channel segmentation masks handed from the decoder to renderers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

import numpy as np
from numpy.typing import NDArray

__all__ = ["MASK_OFF", "MASK_ON", "SegmentationMask"]

MASK_ON = 255
MASK_OFF = 0

NDArrayU8 = NDArray[np.uint8]
NDArrayF32 = NDArray[np.float32]


@dataclass
class SegmentationMask:
    """``uint8`` grid in [0,255]; 255 marks the target class."""

    data: NDArrayU8
    frame_index: int = 0
    timestamp: Optional[float] = None
    class_id: Optional[int] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        arr = np.asarray(self.data)
        if arr.ndim != 2:
            raise ValueError(f"SegmentationMask needs a 2-D array, got shape {arr.shape}.")
        if arr.dtype != np.uint8:
            arr = np.clip(np.rint(arr), 0, 255).astype(np.uint8)
        self.data = arr

    @classmethod
    def from_normalized(cls, values: Any, **kwargs: Any) -> "SegmentationMask":
        arr = np.clip(np.asarray(values, dtype=np.float32), 0.0, 1.0)
        return cls(np.rint(arr * 255.0).astype(np.uint8), **kwargs)

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    def normalized(self) -> NDArrayF32:
        return self.data.astype(np.float32) / np.float32(255.0)

    def coverage(self) -> float:
        """Fraction of pixels at or above half intensity."""
        if self.data.size == 0:
            return 0.0
        return float(np.count_nonzero(self.data >= 128)) / float(self.data.size)

    def copy(self) -> "SegmentationMask":
        return replace(self, data=self.data.copy(), meta=dict(self.meta))

    def snapshot(self) -> "SegmentationMask":
        """Read-only copy for listeners."""
        frozen = self.copy()
        frozen.data.setflags(write=False)
        return frozen

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SegmentationMask):
            return NotImplemented
        return self.data.shape == other.data.shape and bool(np.array_equal(self.data, other.data))
