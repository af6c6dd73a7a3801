"""
Derive a ``ModelIOSpec`` from a loaded model.

Segmentation exports rarely agree on layout or output naming, so the
declared input shape is inspected to guess NHWC vs NCHW, the output is picked
by name heuristics, and a single probe inference on a zero tensor reads the
class count when the declared output shape leaves it dynamic. A spec passed
explicitly to the pipeline always wins over anything guessed here.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from ..config import ModelIOSpec
from ..errors import FrescoError, OutputNotFound
from ..tensor import Layout, Tensor
from .engine import InferenceEngine, find_output

__all__ = ["auto_configure", "detect_layout", "probe_class_count", "select_output_name"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

_SPATIAL_MIN = 16
_MAX_CHANNEL_DIM = 4
_DEFAULTS = ModelIOSpec()


def _looks_like_channels(dim: Optional[int], spatial: Tuple[Optional[int], Optional[int]], expected: int) -> bool:
    if dim is None:
        return False
    if dim == expected:
        return True
    return dim <= _MAX_CHANNEL_DIM and all(s is not None and s > _SPATIAL_MIN for s in spatial)


def detect_layout(declared_shape: Sequence[Optional[int]], expected_channels: int = 3) -> Layout:
    """
    Guess the layout of a 4-D input from its declared dimensions.

    Dynamic dimensions are passed as ``None``. Anything that is not 4-D, or
    stays ambiguous, is treated as channels-last.
    """
    dims = tuple(declared_shape)
    if len(dims) != 4:
        return Layout.CHANNELS_LAST
    d1, d2, d3 = dims[1], dims[2], dims[3]

    if _looks_like_channels(d3, (d1, d2), expected_channels):
        return Layout.CHANNELS_LAST
    if _looks_like_channels(d1, (d2, d3), expected_channels):
        return Layout.CHANNELS_FIRST

    # whichever neighbouring pair is closer in size is taken as H,W
    if None not in (d1, d2, d3):
        if abs(d1 - d2) < abs(d2 - d3):  # type: ignore[operator]
            return Layout.CHANNELS_LAST
        if abs(d2 - d3) < abs(d1 - d2):  # type: ignore[operator]
            return Layout.CHANNELS_FIRST
    return Layout.CHANNELS_LAST


def select_output_name(engine: InferenceEngine, requested: Optional[str] = None) -> str:
    """``find_output`` that falls back to the first declared output."""
    outputs = list(engine.model.outputs)
    try:
        return find_output(engine, requested or _DEFAULTS.output_name)
    except OutputNotFound:
        if not outputs:
            raise
        LOGGER.warning("model_config.output.first requested=%s selected=%s", requested, outputs[0])
        return outputs[0]


def _input_geometry(declared: Sequence[Optional[int]], layout: Layout) -> Tuple[int, int, int]:
    dims = list(declared) + [None] * (4 - len(declared))
    if layout is Layout.CHANNELS_LAST:
        height, width, channels = dims[1], dims[2], dims[3]
    else:
        channels, height, width = dims[1], dims[2], dims[3]
    return (
        int(width or _DEFAULTS.input_width),
        int(height or _DEFAULTS.input_height),
        int(channels or _DEFAULTS.input_channels),
    )


def _class_count_from_shape(shape: Sequence[int], layout: Layout, pixels: int) -> Optional[int]:
    dims = tuple(int(d) for d in shape)
    if len(dims) == 4:
        return dims[3] if layout is Layout.CHANNELS_LAST else dims[1]
    if len(dims) == 3:
        return None
    total = int(np.prod(dims)) if dims else 0
    if pixels > 0 and total and total % pixels == 0:
        return total // pixels
    return None


def probe_class_count(engine: InferenceEngine, spec: ModelIOSpec) -> Optional[int]:
    """Run one zero frame through ``engine`` and read the class dimension."""
    probe = Tensor(np.zeros(spec.input_shape, dtype=np.float32), spec.input_shape, spec.layout, name=spec.input_name)
    output: Optional[Tensor] = None
    try:
        output = engine.execute(probe)
        if output.name != spec.output_name:
            output.release()
            output = engine.peek_output(spec.output_name)
        return _class_count_from_shape(output.shape, spec.layout, spec.input_width * spec.input_height)
    except FrescoError as exc:
        LOGGER.warning("model_config.probe.failed error=%s", exc)
        return None
    finally:
        probe.release()
        if output is not None:
            output.release()


def auto_configure(
    engine: InferenceEngine,
    class_count_hint: Optional[int] = None,
    *,
    output_name: Optional[str] = None,
    probe: bool = True,
) -> ModelIOSpec:
    """
    Build a ``ModelIOSpec`` for ``engine``'s model.

    ``class_count_hint`` wins over the declared output shape and the probe.
    """
    model = engine.model
    if not model.inputs:
        raise OutputNotFound("Model declares no inputs.")
    first = model.inputs[0]
    layout = detect_layout(first.declared_shape, _DEFAULTS.input_channels)
    width, height, channels = _input_geometry(first.declared_shape, layout)
    name = select_output_name(engine, output_name)

    spec = ModelIOSpec(
        input_name=first.name,
        output_name=name,
        input_width=width,
        input_height=height,
        input_channels=channels if channels in (1, 3) else _DEFAULTS.input_channels,
        class_count=_DEFAULTS.class_count,
        layout=layout,
    )

    classes = class_count_hint
    if classes is None and probe:
        classes = probe_class_count(engine, spec)
    if classes:
        spec = spec.with_changes(class_count=int(classes))
    LOGGER.info("model_config.resolved %s", spec.describe())
    return spec
