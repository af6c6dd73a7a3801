"""
ONNX Runtime inference engine with single-flight execution.

The engine owns the ``InferenceSession`` for its whole lifetime and releases
it on ``close``. ``execute`` never queues: a call that arrives while another
one is running on the same engine raises ``EngineBusy``. Tensors handed out
by ``execute``/``peek_output`` are copies owned by the caller.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

try:
    import onnxruntime as ort  # type: ignore
except Exception:  # pragma: no cover - optional at import time
    ort = None  # type: ignore

try:
    import psutil  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    psutil = None

from ..errors import EngineBusy, InferenceFailure, ModelLoadError, NotInitialized, OutputNotFound
from ..tensor import Layout, Tensor

__all__ = [
    "InferenceEngine",
    "ModelInput",
    "OUTPUT_NAME_HEURISTICS",
    "OnnxInferenceEngine",
    "RuntimeModel",
    "configure_onnxruntime",
    "find_output",
    "load_model",
    "open_engine",
]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

ModelSource = Union[str, Path, bytes]

OUTPUT_NAME_HEURISTICS: Tuple[str, ...] = ("logits", "softmax", "output", "predictions")

_ORT_CONFIG: Dict[str, Any] = {
    "threads": None,
    "execution": "sequential",
}
_ORT_CONFIG_LOCK = threading.Lock()


@dataclass(frozen=True)
class ModelInput:
    name: str
    declared_shape: Tuple[Optional[int], ...]


@dataclass(frozen=True)
class RuntimeModel:
    inputs: Tuple[ModelInput, ...]
    outputs: Tuple[str, ...]
    source: str = "<memory>"

    def input_named(self, name: Optional[str]) -> Optional[ModelInput]:
        for item in self.inputs:
            if item.name == name:
                return item
        return None


class InferenceEngine(Protocol):
    @property
    def model(self) -> RuntimeModel: ...
    @property
    def is_loaded(self) -> bool: ...
    def execute(self, tensor: Tensor) -> Tensor: ...
    def peek_output(self, name: str) -> Tensor: ...
    def close(self) -> None: ...


def _default_thread_count() -> Optional[int]:
    try:
        if psutil is not None:
            physical = psutil.cpu_count(logical=False)
            if physical:
                return int(physical)
    except Exception:
        LOGGER.debug("psutil.cpu_count failed", exc_info=True)
    count = os.cpu_count()
    return int(count) if count else None


def configure_onnxruntime(*, threads: Optional[int] = None, execution: Optional[str] = None) -> None:
    """
    Store session tuning applied to every engine created afterwards.

    ``threads`` defaults to the physical core count; ``execution`` is
    ``"sequential"`` or ``"parallel"``.
    """
    execution_mode = (execution or _ORT_CONFIG.get("execution") or "sequential").strip().lower()
    if execution_mode not in {"sequential", "parallel"}:
        execution_mode = "sequential"
    with _ORT_CONFIG_LOCK:
        _ORT_CONFIG.update({"threads": threads, "execution": execution_mode})


def _session_options() -> Any:
    assert ort is not None
    with _ORT_CONFIG_LOCK:
        config = dict(_ORT_CONFIG)
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.execution_mode = (
        ort.ExecutionMode.ORT_PARALLEL if config["execution"] == "parallel" else ort.ExecutionMode.ORT_SEQUENTIAL
    )
    threads = config.get("threads") or _default_thread_count()
    if threads:
        options.intra_op_num_threads = int(threads)
    options.inter_op_num_threads = 1
    options.enable_mem_pattern = True
    options.enable_cpu_mem_arena = True
    options.log_severity_level = 3
    return options


def _resolve_providers(requested: Optional[Sequence[str]]) -> List[str]:
    assert ort is not None
    available = [str(p) for p in ort.get_available_providers()]
    wanted: Optional[List[str]] = list(requested) if requested else None
    if wanted is None:
        env = os.getenv("FRESCO_ORT_PROVIDERS", "").strip()
        if env:
            wanted = [token.strip() for token in env.split(",") if token.strip()]
    if not wanted:
        return available
    picked = [p for p in wanted if p in available]
    if not picked:
        LOGGER.warning("engine.providers.unavailable requested=%s available=%s", wanted, available)
        return available
    return picked


def _declared_shape(raw: Sequence[Any]) -> Tuple[Optional[int], ...]:
    dims: List[Optional[int]] = []
    for dim in raw:
        dims.append(int(dim) if isinstance(dim, int) and dim > 0 else None)
    return tuple(dims)


class OnnxInferenceEngine:
    """
    ``InferenceSession`` wrapper.

    Args:
        source: ``.onnx`` path or serialized model bytes.
        providers: Optional execution provider names, filtered against what
            the installed runtime offers.
    """

    def __init__(self, source: ModelSource, *, providers: Optional[Sequence[str]] = None) -> None:
        if ort is None:
            raise ModelLoadError("onnxruntime is not installed (pip install onnxruntime).")
        label = "<memory>" if isinstance(source, (bytes, bytearray)) else str(Path(source).expanduser())
        if not isinstance(source, (bytes, bytearray)) and not Path(label).exists():
            raise ModelLoadError(f"Model file not found: {label}")
        try:
            provider_list = _resolve_providers(providers)
            payload: Any = bytes(source) if isinstance(source, (bytes, bytearray)) else label
            self._session: Optional[Any] = ort.InferenceSession(
                payload,
                sess_options=_session_options(),
                providers=provider_list,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to create inference session for {label}: {exc}") from exc

        session = self._session
        self._model = RuntimeModel(
            inputs=tuple(ModelInput(i.name, _declared_shape(i.shape)) for i in session.get_inputs()),
            outputs=tuple(o.name for o in session.get_outputs()),
            source=label,
        )
        self._lock = threading.Lock()
        self._outputs: Dict[str, np.ndarray] = {}
        self._output_layout = Layout.CHANNELS_LAST
        LOGGER.info(
            "engine.loaded source=%s inputs=%s outputs=%s providers=%s",
            label,
            [i.name for i in self._model.inputs],
            list(self._model.outputs),
            session.get_providers(),
        )

    @property
    def model(self) -> RuntimeModel:
        return self._model

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _feed_name(self, tensor: Tensor) -> str:
        if tensor.name and self._model.input_named(tensor.name) is not None:
            return tensor.name
        if not self._model.inputs:
            raise NotInitialized("Loaded model declares no inputs.")
        return self._model.inputs[0].name

    def execute(self, tensor: Tensor) -> Tensor:
        """Run the model; returns the first declared output."""
        session = self._session
        if session is None:
            raise NotInitialized("No model loaded.")
        if not self._lock.acquire(blocking=False):
            raise EngineBusy("Inference already in flight; request dropped.")
        try:
            feed = {self._feed_name(tensor): tensor.as_array()}
            try:
                results = session.run(None, feed)
            except Exception as exc:
                raise InferenceFailure(f"Runtime execution failed: {exc}", cause=exc) from exc
            self._output_layout = tensor.layout
            self._outputs = {
                name: np.asarray(value, dtype=np.float32)
                for name, value in zip(self._model.outputs, results)
            }
        finally:
            self._lock.release()
        if not self._model.outputs:
            raise InferenceFailure("Model produced no outputs.")
        first = self._model.outputs[0]
        return self._wrap(first)

    def _wrap(self, name: str) -> Tensor:
        value = self._outputs[name]
        return Tensor(value.copy(), value.shape or (1,), self._output_layout, name=name)

    def peek_output(self, name: str) -> Tensor:
        if self._session is None:
            raise NotInitialized("No model loaded.")
        if name not in self._outputs:
            raise OutputNotFound(f"Output {name!r} is not available; model outputs: {list(self._model.outputs)}")
        return self._wrap(name)

    def close(self) -> None:
        if self._session is None:
            return
        self._outputs = {}
        self._session = None
        LOGGER.info("engine.closed source=%s", self._model.source)

    def __enter__(self) -> "OnnxInferenceEngine":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def find_output(source: "InferenceEngine | RuntimeModel", requested: Optional[str]) -> str:
    """
    Pick the output to decode from an engine (or its ``RuntimeModel``).

    Exact name first; otherwise the first declared output whose name contains
    one of ``OUTPUT_NAME_HEURISTICS`` (checked in that order).
    """
    model = source.model if hasattr(source, "model") else source
    outputs = list(model.outputs)
    if requested and requested in outputs:
        return requested
    for token in OUTPUT_NAME_HEURISTICS:
        for name in outputs:
            if token in name.lower():
                LOGGER.warning(
                    "engine.output.fallback requested=%s selected=%s heuristic=%s",
                    requested,
                    name,
                    token,
                )
                return name
    raise OutputNotFound(f"Output {requested!r} not found and no heuristic matched {outputs}.")


def load_model(source: ModelSource, *, providers: Optional[Sequence[str]] = None) -> RuntimeModel:
    """Read input/output declarations without keeping a session around."""
    with open_engine(source, providers=providers) as engine:
        return engine.model


@contextmanager
def open_engine(source: ModelSource, *, providers: Optional[Sequence[str]] = None) -> Iterator[OnnxInferenceEngine]:
    engine = OnnxInferenceEngine(source, providers=providers)
    try:
        yield engine
    finally:
        engine.close()
