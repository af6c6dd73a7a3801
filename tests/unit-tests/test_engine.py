from __future__ import annotations

import threading
from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from fresco.errors import EngineBusy, ModelLoadError, NotInitialized, OutputNotFound
from fresco.runtime import engine as engine_mod
from fresco.runtime.engine import (
    ModelInput,
    OnnxInferenceEngine,
    RuntimeModel,
    configure_onnxruntime,
    find_output,
    load_model,
    open_engine,
)
from fresco.tensor import Layout, Tensor


def _identity_model(
    shape: Sequence[object] = (1, 4, 4, 3),
    outputs: Sequence[str] = ("logits",),
    input_name: str = "images",
) -> bytes:
    onnx = pytest.importorskip("onnx")
    pytest.importorskip("onnxruntime")
    from onnx import TensorProto, helper

    inp = helper.make_tensor_value_info(input_name, TensorProto.FLOAT, list(shape))
    outs = [helper.make_tensor_value_info(name, TensorProto.FLOAT, list(shape)) for name in outputs]
    nodes = [helper.make_node("Identity", [input_name], [name]) for name in outputs]
    graph = helper.make_graph(nodes, "fresco_identity", [inp], outs)
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.checker.check_model(model)
    return model.SerializeToString()


def test_execute_returns_first_output_copy() -> None:
    payload = _identity_model()
    data = np.arange(48, dtype=np.float32).reshape(1, 4, 4, 3)
    with open_engine(payload) as engine:
        assert engine.is_loaded
        assert engine.model.inputs[0] == ModelInput("images", (1, 4, 4, 3))
        assert engine.model.outputs == ("logits",)
        out = engine.execute(Tensor(data, data.shape, Layout.CHANNELS_LAST, name="images"))
        assert out.name == "logits"
        assert out.shape == (1, 4, 4, 3)
        assert np.array_equal(out.as_array(), data)
        out.release()
        again = engine.peek_output("logits")
        assert np.array_equal(again.as_array(), data)
    assert not engine.is_loaded


def test_peek_unknown_output() -> None:
    with open_engine(_identity_model()) as engine:
        engine.execute(Tensor(np.zeros((1, 4, 4, 3), dtype=np.float32)))
        with pytest.raises(OutputNotFound):
            engine.peek_output("nope")


def test_closed_engine_raises_not_initialized() -> None:
    engine = OnnxInferenceEngine(_identity_model())
    engine.close()
    with pytest.raises(NotInitialized):
        engine.execute(Tensor(np.zeros((1, 4, 4, 3), dtype=np.float32)))


def test_busy_engine_drops_request() -> None:
    engine = OnnxInferenceEngine(_identity_model())
    assert engine._lock.acquire()
    try:
        with pytest.raises(EngineBusy):
            engine.execute(Tensor(np.zeros((1, 4, 4, 3), dtype=np.float32)))
    finally:
        engine._lock.release()
    engine.close()


def test_dynamic_dims_are_reported_as_none(tmp_path: Path) -> None:
    path = tmp_path / "dyn.onnx"
    path.write_bytes(_identity_model(shape=("batch", 3, "h", "w")))
    model = load_model(path)
    assert model.inputs[0].declared_shape == (None, 3, None, None)
    assert model.source == str(path)


def test_missing_or_corrupt_model(tmp_path: Path) -> None:
    pytest.importorskip("onnxruntime")
    with pytest.raises(ModelLoadError):
        OnnxInferenceEngine(tmp_path / "missing.onnx")
    bad = tmp_path / "bad.onnx"
    bad.write_bytes(b"not a model")
    with pytest.raises(ModelLoadError):
        OnnxInferenceEngine(bad)


def test_find_output_heuristics() -> None:
    model = RuntimeModel(inputs=(), outputs=("aux", "Predictions", "final_logits"))
    assert find_output(model, "aux") == "aux"
    assert find_output(model, "missing") == "final_logits"
    assert find_output(RuntimeModel((), ("x", "Predictions")), None) == "Predictions"
    with pytest.raises(OutputNotFound):
        find_output(RuntimeModel((), ("x", "y")), "z")


def test_find_output_accepts_engine() -> None:
    with open_engine(_identity_model(outputs=("aux", "softmax_out"))) as engine:
        assert find_output(engine, "output_segmentations") == "softmax_out"


def test_configure_onnxruntime_applies_to_new_sessions(monkeypatch: pytest.MonkeyPatch) -> None:
    ort = pytest.importorskip("onnxruntime")
    monkeypatch.setattr(engine_mod, "_ORT_CONFIG", {"threads": None, "execution": "sequential"})
    configure_onnxruntime(threads=2, execution="parallel")
    options = engine_mod._session_options()
    assert options.intra_op_num_threads == 2
    assert options.execution_mode == ort.ExecutionMode.ORT_PARALLEL
    configure_onnxruntime(execution="bogus")
    assert engine_mod._ORT_CONFIG["execution"] == "sequential"


def test_default_threads_use_physical_cores(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = type("P", (), {"cpu_count": staticmethod(lambda logical=True: 3)})
    monkeypatch.setattr(engine_mod, "psutil", fake)
    assert engine_mod._default_thread_count() == 3


def test_provider_env_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    pytest.importorskip("onnxruntime")
    monkeypatch.setenv("FRESCO_ORT_PROVIDERS", "NoSuchProvider,CPUExecutionProvider")
    assert engine_mod._resolve_providers(None) == ["CPUExecutionProvider"]
    monkeypatch.setenv("FRESCO_ORT_PROVIDERS", "NoSuchProvider")
    assert "CPUExecutionProvider" in engine_mod._resolve_providers(None)


def test_concurrent_execute_is_single_flight() -> None:
    engine = OnnxInferenceEngine(_identity_model())
    dropped: list = []
    errors: list = []
    barrier = threading.Barrier(4)
    tensor_shape = (1, 4, 4, 3)

    def _worker() -> None:
        barrier.wait()
        for _ in range(20):
            try:
                engine.execute(Tensor(np.ones(tensor_shape, dtype=np.float32))).release()
            except EngineBusy:
                dropped.append(1)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10.0)
    engine.close()
    assert errors == []
    assert len(dropped) < 80
