"""
Dense tensors with an explicit layout tag.

The buffer is always a flat ``float32`` numpy array; ``shape`` is carried
separately so flattened runtime outputs and synthesized shapes can be
represented without reshaping up front.
"""

from __future__ import annotations

import enum
import math
from typing import Any, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import InvalidShape

__all__ = ["Layout", "Tensor", "parse_layout"]

NDArrayF32 = NDArray[np.float32]


class Layout(str, enum.Enum):
    CHANNELS_LAST = "nhwc"
    CHANNELS_FIRST = "nchw"

    @property
    def label(self) -> str:
        return "channel-last (NHWC)" if self is Layout.CHANNELS_LAST else "channel-first (NCHW)"


_LAYOUT_ALIASES = {
    "nhwc": Layout.CHANNELS_LAST,
    "channels_last": Layout.CHANNELS_LAST,
    "channel-last": Layout.CHANNELS_LAST,
    "last": Layout.CHANNELS_LAST,
    "nchw": Layout.CHANNELS_FIRST,
    "channels_first": Layout.CHANNELS_FIRST,
    "channel-first": Layout.CHANNELS_FIRST,
    "first": Layout.CHANNELS_FIRST,
}


def parse_layout(value: "Layout | str") -> Layout:
    if isinstance(value, Layout):
        return value
    token = str(value).strip().lower()
    try:
        return _LAYOUT_ALIASES[token]
    except KeyError:
        raise ValueError(f"Unknown tensor layout {value!r}; expected NHWC or NCHW.") from None


class Tensor:
    """
    Flat numeric buffer + shape + layout.

    Invariant: ``prod(shape) == buffer.size``. A released tensor refuses all
    further data access.
    """

    __slots__ = ("_data", "_shape", "layout", "name")

    def __init__(
        self,
        data: Any,
        shape: Optional[Sequence[int]] = None,
        layout: "Layout | str" = Layout.CHANNELS_LAST,
        *,
        name: Optional[str] = None,
    ) -> None:
        arr = np.asarray(data, dtype=np.float32)
        if shape is None:
            shape = arr.shape
        dims = tuple(int(d) for d in shape)
        if any(d <= 0 for d in dims):
            raise InvalidShape(f"Tensor dimensions must be positive, got {dims}.")
        flat = np.ascontiguousarray(arr).reshape(-1)
        expected = math.prod(dims) if dims else 1
        if expected != flat.size:
            raise InvalidShape(
                f"Shape {dims} describes {expected} elements but the buffer holds {flat.size}."
            )
        self._data: Optional[NDArrayF32] = flat
        self._shape: Tuple[int, ...] = dims
        self.layout = parse_layout(layout)
        self.name = name

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @property
    def ndim(self) -> int:
        return len(self._shape)

    @property
    def size(self) -> int:
        return int(self.data.size)

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> NDArrayF32:
        """Flat view of the buffer."""
        if self._data is None:
            raise ValueError(f"Tensor {self.name!r} was already released.")
        return self._data

    def as_array(self) -> NDArrayF32:
        """Buffer viewed with ``shape``."""
        return self.data.reshape(self._shape)

    def with_shape(self, shape: Sequence[int]) -> "Tensor":
        """Same buffer, new shape. Ownership moves to the returned tensor."""
        out = Tensor(self.data, shape, self.layout, name=self.name)
        self._data = None
        return out

    def release(self) -> None:
        self._data = None

    def __enter__(self) -> "Tensor":
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else f"{self._shape}"
        return f"Tensor(name={self.name!r}, shape={state}, layout={self.layout.value})"
