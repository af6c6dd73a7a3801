"""
Configuration objects for the segmentation pipeline.

``ModelIOSpec`` is the model I/O contract (resolved once after model load,
replaced only through ``SegmentationPipeline.reconfigure``). ``PipelineSettings``
and ``StabilizerSettings`` hold the tunables an operator can change; both can
be seeded from ``FRESCO_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from .tensor import Layout, parse_layout

__all__ = [
    "DecodeMode",
    "ModelIOSpec",
    "PipelineSettings",
    "StabilizerSettings",
]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

DECODE_MODES = ("threshold", "argmax")
DecodeMode = str


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("config.env.invalid name=%s value=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("config.env.invalid name=%s value=%r", name, raw)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ModelIOSpec:
    """What the pipeline believes about the model's tensors."""

    input_name: str = "images"
    output_name: str = "output_segmentations"
    input_width: int = 513
    input_height: int = 513
    input_channels: int = 3
    class_count: int = 2
    layout: Layout = Layout.CHANNELS_LAST
    decode_mode: DecodeMode = "threshold"
    normalize: bool = True
    mean: Optional[Tuple[float, ...]] = None
    std: Optional[Tuple[float, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "layout", parse_layout(self.layout))
        for attr in ("input_width", "input_height", "input_channels", "class_count"):
            value = int(getattr(self, attr))
            if value <= 0:
                raise ValueError(f"ModelIOSpec.{attr} must be positive, got {value}.")
            object.__setattr__(self, attr, value)
        mode = str(self.decode_mode or "threshold").strip().lower()
        if mode not in DECODE_MODES:
            raise ValueError(f"decode_mode must be one of {DECODE_MODES}, got {self.decode_mode!r}.")
        object.__setattr__(self, "decode_mode", mode)
        for attr in ("mean", "std"):
            values = getattr(self, attr)
            if values is not None:
                values = tuple(float(v) for v in values)
                if len(values) != self.input_channels:
                    raise ValueError(f"ModelIOSpec.{attr} needs {self.input_channels} values, got {len(values)}.")
                object.__setattr__(self, attr, values)

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        if self.layout is Layout.CHANNELS_LAST:
            return (1, self.input_height, self.input_width, self.input_channels)
        return (1, self.input_channels, self.input_height, self.input_width)

    @property
    def aspect_ratio(self) -> float:
        return self.input_width / self.input_height

    def with_changes(self, **changes: object) -> "ModelIOSpec":
        return replace(self, **changes)  # type: ignore[arg-type]

    def describe(self) -> str:
        return (
            f"input={self.input_name}[{self.input_width}x{self.input_height}x{self.input_channels}] "
            f"output={self.output_name} classes={self.class_count} layout={self.layout.value} "
            f"decode={self.decode_mode}"
        )


@dataclass
class StabilizerSettings:
    enabled: bool = True
    base_factor: float = 0.7
    snap_threshold: float = 0.1

    def __post_init__(self) -> None:
        self.enabled = bool(self.enabled)
        self.base_factor = _clamp01(self.base_factor)
        self.snap_threshold = max(0.0, min(0.5, float(self.snap_threshold)))


@dataclass
class PipelineSettings:
    target_class_id: int = 1
    threshold: float = 0.5
    frame_interval: int = 1
    stabilizer: StabilizerSettings = field(default_factory=StabilizerSettings)

    def __post_init__(self) -> None:
        self.target_class_id = int(self.target_class_id)
        if self.target_class_id < 0:
            raise ValueError("target_class_id must be >= 0")
        self.threshold = float(self.threshold)
        self.frame_interval = max(1, int(self.frame_interval))

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        stabilizer = StabilizerSettings(
            enabled=_env_bool("FRESCO_SMOOTHING", True),
            base_factor=_env_float("FRESCO_SMOOTHING_FACTOR", 0.7),
            snap_threshold=_env_float("FRESCO_SNAP_THRESHOLD", 0.1),
        )
        target = _env_int("FRESCO_TARGET_CLASS", 1)
        if target < 0:
            LOGGER.warning("config.env.invalid name=FRESCO_TARGET_CLASS value=%r", target)
            target = 1
        return cls(
            target_class_id=target,
            threshold=_env_float("FRESCO_THRESHOLD", 0.5),
            frame_interval=_env_int("FRESCO_FRAME_INTERVAL", 1),
            stabilizer=stabilizer,
        )
