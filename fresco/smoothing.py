"""
Temporal smoothing for segmentation masks.

The stabilizer keeps the previous frame's mask so consecutive frames can be
blended into a steadier overlay without visible flicker.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from .config import StabilizerSettings
from .mask import SegmentationMask

__all__ = ["TemporalMaskStabilizer", "adaptive_blend"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

NDArrayF32 = NDArray[np.float32]

# Differences above 1/_DIFF_GAIN (in normalized units) get the full base factor.
_DIFF_GAIN = 5.0


def adaptive_blend(
    previous: NDArrayF32,
    current: NDArrayF32,
    base_factor: float,
    snap_threshold: float,
) -> NDArrayF32:
    """
    Blend two normalized masks.

    ``factor = lerp(base, base*0.5, clamp(1 - |cur-prev|*5, 0, 1))`` so stable
    pixels are smoothed harder and changing pixels follow the current frame.
    Results within ``snap_threshold`` of 0 or 1 are snapped to remove ghost
    edges.
    """
    prev = np.asarray(previous, dtype=np.float32)
    cur = np.asarray(current, dtype=np.float32)
    base = np.float32(base_factor)
    difference = np.abs(cur - prev)
    stability = np.clip(1.0 - difference * np.float32(_DIFF_GAIN), 0.0, 1.0)
    factor = base + (base * np.float32(0.5) - base) * stability
    blended = prev + (cur - prev) * factor
    snap = np.float32(snap_threshold)
    blended = np.where(blended < snap, np.float32(0.0), blended)
    blended = np.where(blended > np.float32(1.0) - snap, np.float32(1.0), blended)
    return blended.astype(np.float32, copy=False)


class TemporalMaskStabilizer:
    """
    Exponential smoothing with adaptive blend factor and edge snapping.

    The first mask (and the first after ``reset`` or a size change) passes
    through unchanged and seeds the state.
    """

    def __init__(
        self,
        *,
        base_factor: float = 0.7,
        snap_threshold: float = 0.1,
        enabled: bool = True,
    ) -> None:
        settings = StabilizerSettings(enabled=enabled, base_factor=base_factor, snap_threshold=snap_threshold)
        self.base_factor = settings.base_factor
        self.snap_threshold = settings.snap_threshold
        self.enabled = settings.enabled
        self._previous: Optional[NDArrayF32] = None

    @classmethod
    def from_settings(cls, settings: StabilizerSettings) -> "TemporalMaskStabilizer":
        return cls(
            base_factor=settings.base_factor,
            snap_threshold=settings.snap_threshold,
            enabled=settings.enabled,
        )

    @property
    def has_state(self) -> bool:
        return self._previous is not None

    def reset(self) -> None:
        self._previous = None

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        if not self.enabled:
            self.reset()

    def stabilize(self, mask: SegmentationMask) -> SegmentationMask:
        if not self.enabled:
            return mask

        current = mask.normalized()
        previous = self._previous
        if previous is None or previous.shape != current.shape:
            if previous is not None:
                LOGGER.debug(
                    "stabilizer.reset.size old=%s new=%s", previous.shape, current.shape
                )
            self._previous = current
            return mask

        blended = adaptive_blend(previous, current, self.base_factor, self.snap_threshold)
        self._previous = blended
        out = SegmentationMask.from_normalized(
            blended,
            frame_index=mask.frame_index,
            timestamp=mask.timestamp,
            class_id=mask.class_id,
            meta=dict(mask.meta),
        )
        return out
