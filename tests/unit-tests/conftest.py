# tests/unit-tests/conftest.py
from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Sequence, Union

import numpy as np
import pytest

from fresco.errors import InferenceFailure, NotInitialized, OutputNotFound
from fresco.runtime.engine import ModelInput, RuntimeModel
from fresco.tensor import Tensor

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

_SETTING_VARS = (
    "FRESCO_TARGET_CLASS",
    "FRESCO_THRESHOLD",
    "FRESCO_FRAME_INTERVAL",
    "FRESCO_SMOOTHING",
    "FRESCO_SMOOTHING_FACTOR",
    "FRESCO_SNAP_THRESHOLD",
    "FRESCO_ORT_PROVIDERS",
)


@pytest.fixture(scope="session", autouse=True)
def _fresco_env(tmp_path_factory: "TempPathFactory") -> None:
    """
    Keep logs out of the user's data dir and make sure operator
    overrides in the calling shell do not leak into the tests.
    """
    os.environ["FRESCO_LOG_FILE"] = str(tmp_path_factory.mktemp("logs") / "fresco.log")
    for name in _SETTING_VARS:
        os.environ.pop(name, None)


if TYPE_CHECKING:
    _ = _fresco_env


Responder = Callable[[Tensor], Union[Any, Mapping[str, Any]]]


class StubEngine:
    """
    In-process engine: ``respond`` maps the input tensor to the output array
    (or a ``{name: array}`` dict for multi-output models).
    """

    def __init__(
        self,
        respond: Responder,
        *,
        outputs: Sequence[str] = ("output_segmentations",),
        input_name: str = "images",
        input_shape: Sequence[Optional[int]] = (1, 4, 4, 3),
    ) -> None:
        self.model = RuntimeModel(
            inputs=(ModelInput(input_name, tuple(input_shape)),),
            outputs=tuple(outputs),
            source="<stub>",
        )
        self.is_loaded = True
        self.calls = 0
        self.closed = False
        self.inputs: list = []
        self._respond = respond
        self._last: Dict[str, np.ndarray] = {}

    def execute(self, tensor: Tensor) -> Tensor:
        if not self.is_loaded:
            raise NotInitialized("stub closed")
        self.calls += 1
        self.inputs.append(tensor.as_array().copy())
        try:
            result = self._respond(tensor)
        except Exception as exc:
            raise InferenceFailure(f"stub failed: {exc}", cause=exc) from exc
        if not isinstance(result, Mapping):
            result = {self.model.outputs[0]: result}
        self._last = {name: np.asarray(value, dtype=np.float32) for name, value in result.items()}
        return self.peek_output(self.model.outputs[0])

    def peek_output(self, name: str) -> Tensor:
        if name not in self._last:
            raise OutputNotFound(name)
        value = self._last[name]
        return Tensor(value.copy(), value.shape, name=name)

    def close(self) -> None:
        self.is_loaded = False
        self.closed = True


def red_wall_responder(tensor: Tensor) -> np.ndarray:
    """Two-class NHWC/NCHW output: class 1 wherever the input is mostly red."""
    arr = tensor.as_array()
    if tensor.layout.value == "nhwc":
        wall = (arr[..., 0] > 0.5).astype(np.float32)
        return np.stack([1.0 - wall, wall], axis=-1)
    wall = (arr[:, 0] > 0.5).astype(np.float32)
    return np.stack([1.0 - wall, wall], axis=1)


@pytest.fixture()
def make_engine() -> Callable[..., StubEngine]:
    def _make(respond: Responder = red_wall_responder, **kwargs: Any) -> StubEngine:
        return StubEngine(respond, **kwargs)

    return _make


@pytest.fixture()
def half_red_frame() -> np.ndarray:
    """4x4 RGB frame: left two columns red, right two columns blue."""
    frame = np.zeros((4, 4, 3), dtype=np.uint8)
    frame[:, :2, 0] = 255
    frame[:, 2:, 2] = 255
    return frame


@pytest.fixture()
def wall_responder() -> Responder:
    return red_wall_responder
