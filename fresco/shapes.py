"""
Output shape resolution and shape-mismatch diagnostics.

Model outputs are not always self-describing: some runtimes hand back a flat
buffer, and misconfigured input sizes produce outputs whose element count
no longer matches the configured contract. The helpers here turn such buffers
into a usable shape when they can, and otherwise enumerate the
(width, height, classes, layout) combinations that would explain the
element count so an operator can reconfigure.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .errors import InvalidShape
from .tensor import Layout, Tensor, parse_layout

__all__ = [
    "DimensionSuggestion",
    "ShapeCandidate",
    "ShapeDiagnosis",
    "describe_diagnosis",
    "diagnose_shape_mismatch",
    "resolve_output_shape",
    "scan_square_shapes",
    "spatial_dims",
    "suggest_input_dimensions",
]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

# Input sizes seen on DeepLab-style wall models, and their typical output strides.
COMMON_INPUT_SIZES: Tuple[Tuple[int, int], ...] = (
    (224, 224),
    (256, 256),
    (512, 512),
    (513, 513),
    (321, 321),
    (271, 271),
)
COMMON_SCALE_FACTORS: Tuple[float, ...] = (1.0, 0.5, 0.25, 0.125, 1.0 / 3.0)
_SIZE_TOLERANCE = 100
_FALLBACK_STRIDE = 8


@dataclass(frozen=True)
class ShapeCandidate:
    width: int
    height: int
    class_count: int
    layout: Layout
    aspect_distance: float = 0.0

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        if self.layout is Layout.CHANNELS_LAST:
            return (1, self.height, self.width, self.class_count)
        return (1, self.class_count, self.height, self.width)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def __str__(self) -> str:
        dims = ", ".join(str(d) for d in self.shape)
        return f"{self.width}x{self.height} {self.layout.label} [{dims}]"


@dataclass(frozen=True)
class ShapeDiagnosis:
    element_count: int
    class_count: int
    pixel_count: int = 0
    target_aspect: Optional[float] = None
    format_mismatch: bool = False
    candidates: Tuple[ShapeCandidate, ...] = field(default_factory=tuple)

    @property
    def primary(self) -> Optional[ShapeCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def alternatives(self) -> Tuple[ShapeCandidate, ...]:
        return self.candidates[1:]

    def contains(self, width: int, height: int) -> bool:
        return any(c.width == width and c.height == height for c in self.candidates)


@dataclass(frozen=True)
class DimensionSuggestion:
    input_width: int
    input_height: int
    input_channels: int
    output_width: int
    output_height: int
    scale: float
    exact: bool


def spatial_dims(shape: Sequence[int], layout: "Layout | str") -> Tuple[int, int, int]:
    """
    Return ``(height, width, channels)`` for a resolved output shape.

    Three-dimensional shapes are ``(N, H, W)`` single-channel maps regardless
    of layout.
    """
    dims = tuple(int(d) for d in shape)
    if len(dims) < 3:
        raise InvalidShape(f"Need at least 3 dimensions to locate H/W, got {dims}.")
    if len(dims) == 3:
        return dims[1], dims[2], 1
    if parse_layout(layout) is Layout.CHANNELS_LAST:
        return dims[1], dims[2], dims[3]
    return dims[2], dims[3], dims[1]


def resolve_output_shape(
    tensor: Tensor,
    input_shape: Sequence[int],
    expected_class_count: int,
    layout: "Layout | str",
) -> Tuple[int, ...]:
    """
    Decide which shape the output buffer should be read with.

    ``input_shape`` is the 4-D model input shape in ``layout`` order; its
    spatial dimensions are used to synthesize a shape for flat outputs.
    """
    if tensor.ndim >= 3:
        return tensor.shape

    lay = parse_layout(layout)
    dims = tuple(int(d) for d in input_shape)
    if len(dims) != 4:
        raise InvalidShape(f"Input shape must have 4 dimensions, got {dims}.")
    if lay is Layout.CHANNELS_LAST:
        height, width = dims[1], dims[2]
    else:
        height, width = dims[2], dims[3]

    classes = int(expected_class_count)
    length = tensor.size
    if classes > 0 and length == height * width * classes:
        if lay is Layout.CHANNELS_LAST:
            resolved: Tuple[int, ...] = (1, height, width, classes)
        else:
            resolved = (1, classes, height, width)
        LOGGER.debug(
            "shape.resolve.synthesized length=%d shape=%s layout=%s", length, resolved, lay.value
        )
        return resolved

    raise InvalidShape(
        f"Output with shape {tensor.shape} ({length} elements) does not match "
        f"{height}x{width}x{classes} expected from the input shape."
    )


def _factor_pairs(pixel_count: int) -> List[Tuple[int, int]]:
    """All (width, height) pairs with width*height == pixel_count."""
    pairs: List[Tuple[int, int]] = []
    for h in range(1, math.isqrt(pixel_count) + 1):
        if pixel_count % h:
            continue
        w = pixel_count // h
        pairs.append((w, h))
        if w != h:
            pairs.append((h, w))
    return pairs


def diagnose_shape_mismatch(
    actual_element_count: int,
    class_count: int,
    *,
    target_aspect: Optional[float] = None,
    preferred_layout: "Layout | str" = Layout.CHANNELS_LAST,
) -> ShapeDiagnosis:
    """
    Enumerate the output shapes that could hold ``actual_element_count`` values.

    Non-divisible counts return an empty diagnosis with ``format_mismatch``
    set. Candidates are ranked by how close ``w/h`` is to ``target_aspect``
    (1.0 when not given); equal distances prefer the taller candidate, then
    ``preferred_layout``.
    """
    count = int(actual_element_count)
    classes = int(class_count)
    aspect = float(target_aspect) if target_aspect else 1.0
    if count <= 0 or classes <= 0:
        LOGGER.warning("shape.diagnose.invalid elements=%d classes=%d", count, classes)
        return ShapeDiagnosis(count, classes, target_aspect=aspect, format_mismatch=True)

    if count % classes:
        LOGGER.warning(
            "shape.diagnose.format_mismatch elements=%d classes=%d remainder=%d",
            count,
            classes,
            count % classes,
        )
        return ShapeDiagnosis(count, classes, target_aspect=aspect, format_mismatch=True)

    pixels = count // classes
    preferred = parse_layout(preferred_layout)
    layouts = (preferred, Layout.CHANNELS_FIRST if preferred is Layout.CHANNELS_LAST else Layout.CHANNELS_LAST)

    candidates: List[ShapeCandidate] = []
    for w, h in _factor_pairs(pixels):
        distance = abs(w / h - aspect)
        for lay in layouts:
            candidates.append(ShapeCandidate(w, h, classes, lay, distance))

    layout_rank = {layouts[0]: 0, layouts[1]: 1}
    candidates.sort(key=lambda c: (round(c.aspect_distance, 9), -c.height, layout_rank[c.layout]))
    diagnosis = ShapeDiagnosis(count, classes, pixels, aspect, False, tuple(candidates))
    LOGGER.info(
        "shape.diagnose elements=%d classes=%d pixels=%d candidates=%d primary=%s",
        count,
        classes,
        pixels,
        len(candidates),
        diagnosis.primary,
    )
    return diagnosis


def scan_square_shapes(total_elements: int, max_class_count: int = 200) -> List[Tuple[int, int]]:
    """Return ``(class_count, side)`` pairs where ``total/classes`` is a perfect square."""
    found: List[Tuple[int, int]] = []
    total = int(total_elements)
    if total <= 0:
        return found
    for classes in range(1, max(1, int(max_class_count)) + 1):
        if total % classes:
            continue
        pixels = total // classes
        side = math.isqrt(pixels)
        if side * side == pixels:
            found.append((classes, side))
    return found


def suggest_input_dimensions(
    element_count: int,
    class_count: int,
    channels: int = 3,
) -> Optional[DimensionSuggestion]:
    """
    Guess which input size produced an output of ``element_count`` values.

    Tries the common input sizes against typical output strides first; when
    none lands within tolerance, takes the most square factor pair of the
    pixel count and assumes a 1:8 output stride.
    """
    count = int(element_count)
    classes = int(class_count)
    if count <= 0 or classes <= 0:
        return None

    for in_w, in_h in COMMON_INPUT_SIZES:
        for scale in COMMON_SCALE_FACTORS:
            out_w = int(round(in_w * scale))
            out_h = int(round(in_h * scale))
            if abs(out_w * out_h * classes - count) < _SIZE_TOLERANCE:
                return DimensionSuggestion(in_w, in_h, channels, out_w, out_h, scale, True)

    if count % classes:
        return None
    pixels = count // classes
    side = math.isqrt(pixels)
    for h in range(side, 0, -1):
        if pixels % h == 0:
            w = pixels // h
            return DimensionSuggestion(
                w * _FALLBACK_STRIDE,
                h * _FALLBACK_STRIDE,
                channels,
                w,
                h,
                1.0 / _FALLBACK_STRIDE,
                False,
            )
    return None


def describe_diagnosis(diagnosis: ShapeDiagnosis, *, limit: int = 10) -> List[str]:
    lines = [
        f"Output holds {diagnosis.element_count} elements for {diagnosis.class_count} classes."
    ]
    if diagnosis.format_mismatch:
        lines.append(
            f"{diagnosis.element_count} is not divisible by {diagnosis.class_count}; "
            "the class count or output name is probably wrong."
        )
        return lines
    lines.append(f"Space for {diagnosis.pixel_count} pixels.")
    primary = diagnosis.primary
    if primary is not None:
        lines.append(
            f"Closest to aspect {diagnosis.target_aspect:.2f}: {primary} (ratio {primary.aspect_ratio:.2f})"
        )
    shown = diagnosis.alternatives[: max(0, limit - 1)]
    for cand in shown:
        lines.append(f"  alternative: {cand} (ratio {cand.aspect_ratio:.2f})")
    hidden = len(diagnosis.alternatives) - len(shown)
    if hidden > 0:
        lines.append(f"  ... {hidden} more")
    return lines
