"""
SegmentationPipeline: frame -> encode -> infer -> resolve -> decode -> stabilize -> listeners.

One frame is in flight at a time. ``submit_frame`` takes the pipeline lock
without blocking; a frame that arrives while another is being processed is
dropped (never queued). Every per-frame failure is contained here: it is
logged, the frame's tensors are released, the pipeline returns to ``IDLE``
and no mask event fires, so the renderer keeps the last good mask.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional

from .config import ModelIOSpec, PipelineSettings
from .decoder import TensorToMaskDecoder
from .encoder import FrameToTensorEncoder
from .errors import (
    EncodingError,
    EngineBusy,
    FormatMismatch,
    FrescoError,
    InferenceFailure,
    InvalidShape,
    NotInitialized,
    OutputNotFound,
    PipelineBusy,
    ShapeMismatch,
)
from .logging_config import log_event
from .mask import SegmentationMask
from .runtime.engine import InferenceEngine, find_output
from .shapes import ShapeDiagnosis, describe_diagnosis, diagnose_shape_mismatch, resolve_output_shape
from .smoothing import TemporalMaskStabilizer
from .tensor import Tensor

__all__ = [
    "FrameReport",
    "FrameStatus",
    "MaskListener",
    "PipelineState",
    "PipelineStats",
    "SegmentationPipeline",
]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

MaskListener = Callable[[SegmentationMask], None]

_LATENCY_WINDOW = 30


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, event, **info)


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    INFERRING = "inferring"
    DECODING = "decoding"
    STABILIZING = "stabilizing"
    CLOSED = "closed"


class FrameStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    SKIPPED = "skipped"
    INVALID_FRAME = "invalid_frame"
    NOT_INITIALIZED = "not_initialized"
    ENCODING_ERROR = "encoding_error"
    INFERENCE_FAILURE = "inference_failure"
    SHAPE_ERROR = "shape_error"
    FORMAT_MISMATCH = "format_mismatch"
    INTERNAL_ERROR = "internal_error"
    CLOSED = "closed"


@dataclass(frozen=True)
class FrameReport:
    status: FrameStatus
    frame_index: int
    timestamp: Optional[float] = None
    mask: Optional[SegmentationMask] = None
    error: Optional[str] = None
    diagnosis: Optional[ShapeDiagnosis] = None
    latency_ms: Optional[float] = None

    @property
    def accepted(self) -> bool:
        return self.status is FrameStatus.ACCEPTED


@dataclass
class PipelineStats:
    submitted: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    last_coverage: Optional[float] = None
    latencies_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_LATENCY_WINDOW))

    @property
    def mean_latency_ms(self) -> Optional[float]:
        if not self.latencies_ms:
            return None
        return sum(self.latencies_ms) / len(self.latencies_ms)

    @property
    def throughput_fps(self) -> Optional[float]:
        mean = self.mean_latency_ms
        if not mean:
            return None
        return 1000.0 / mean

    def copy(self) -> "PipelineStats":
        return PipelineStats(
            submitted=self.submitted,
            processed=self.processed,
            skipped=self.skipped,
            failed=self.failed,
            last_coverage=self.last_coverage,
            latencies_ms=deque(self.latencies_ms, maxlen=_LATENCY_WINDOW),
        )


_FAILED_STATUSES = {
    FrameStatus.INVALID_FRAME,
    FrameStatus.NOT_INITIALIZED,
    FrameStatus.ENCODING_ERROR,
    FrameStatus.INFERENCE_FAILURE,
    FrameStatus.SHAPE_ERROR,
    FrameStatus.FORMAT_MISMATCH,
    FrameStatus.INTERNAL_ERROR,
}

# Rejected before any work reached the engine.
_REJECTED_STATUSES = {
    FrameStatus.SKIPPED,
    FrameStatus.INVALID_FRAME,
    FrameStatus.NOT_INITIALIZED,
    FrameStatus.ENCODING_ERROR,
    FrameStatus.CLOSED,
}


class SegmentationPipeline:
    """
    Consolidated controller for one model/engine.

    Args:
        engine: Loaded inference engine; the pipeline closes it on ``close``.
        io_spec: Model I/O contract. Defaults to ``ModelIOSpec()``.
        settings: Operator tunables; defaults to ``PipelineSettings()``.
        encoder, decoder, stabilizer: Stage overrides (mostly for tests).
    """

    def __init__(
        self,
        engine: Optional[InferenceEngine],
        io_spec: Optional[ModelIOSpec] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        encoder: Optional[FrameToTensorEncoder] = None,
        decoder: Optional[TensorToMaskDecoder] = None,
        stabilizer: Optional[TemporalMaskStabilizer] = None,
    ) -> None:
        self._engine = engine
        self._spec = io_spec or ModelIOSpec()
        self._settings = settings or PipelineSettings()
        self._encoder = encoder or FrameToTensorEncoder()
        self._decoder = decoder or TensorToMaskDecoder(mode=self._spec.decode_mode)
        self._stabilizer = stabilizer or TemporalMaskStabilizer.from_settings(self._settings.stabilizer)

        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._listeners_lock = threading.Lock()
        self._listeners: List[MaskListener] = []
        self._state = PipelineState.IDLE
        self._stats = PipelineStats()
        self._frame_index = 0
        self._valid_frames = 0
        self._output_name: Optional[str] = None
        self._last_diagnosis: Optional[ShapeDiagnosis] = None
        self._last_mask: Optional[SegmentationMask] = None

    # ------------------------------------------------------------------ #
    # properties
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def io_spec(self) -> ModelIOSpec:
        return self._spec

    @property
    def target_class_id(self) -> int:
        return self._settings.target_class_id

    @property
    def threshold(self) -> float:
        return self._settings.threshold

    @property
    def frame_interval(self) -> int:
        return self._settings.frame_interval

    @frame_interval.setter
    def frame_interval(self, value: int) -> None:
        with self._lock:
            self._settings.frame_interval = max(1, int(value))
            self._valid_frames = 0

    @property
    def smoothing_enabled(self) -> bool:
        return self._stabilizer.enabled

    @property
    def stats(self) -> PipelineStats:
        with self._stats_lock:
            return self._stats.copy()

    @property
    def last_diagnosis(self) -> Optional[ShapeDiagnosis]:
        return self._last_diagnosis

    @property
    def last_mask(self) -> Optional[SegmentationMask]:
        """Read-only copy of the most recent good mask."""
        mask = self._last_mask
        return mask.snapshot() if mask is not None else None

    # ------------------------------------------------------------------ #
    # listeners
    # ------------------------------------------------------------------ #
    def add_listener(self, listener: MaskListener) -> None:
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: MaskListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, mask: SegmentationMask) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(mask.snapshot())
            except Exception as exc:
                _log("pipeline.listener.failed", listener=getattr(listener, "__name__", repr(listener)), error=exc)

    # ------------------------------------------------------------------ #
    # frames
    # ------------------------------------------------------------------ #
    def _bump(self, **counts: int) -> None:
        with self._stats_lock:
            for key, value in counts.items():
                setattr(self._stats, key, getattr(self._stats, key) + value)

    def _try_acquire(self) -> None:
        if self._state is not PipelineState.IDLE or not self._lock.acquire(blocking=False):
            raise PipelineBusy(f"Pipeline is {self._state.value}; frame dropped.")

    def submit_frame(self, pixels: Any, width: int, height: int, timestamp: Optional[float] = None) -> FrameReport:
        """
        Offer a frame. Returns at once with ``SKIPPED`` when a frame is in
        flight; otherwise runs every stage on the calling thread.
        """
        self._bump(submitted=1)
        if self._state is PipelineState.CLOSED:
            return FrameReport(FrameStatus.CLOSED, self._frame_index, timestamp)
        try:
            self._try_acquire()
        except PipelineBusy as exc:
            self._bump(skipped=1)
            _log("pipeline.frame.skipped", cause=str(exc), timestamp=timestamp)
            return FrameReport(FrameStatus.SKIPPED, self._frame_index, timestamp)

        try:
            report = self._accept(pixels, width, height, timestamp)
        finally:
            if self._state is not PipelineState.CLOSED:
                self._state = PipelineState.IDLE
            self._lock.release()

        if report.status is FrameStatus.SKIPPED:
            self._bump(skipped=1)
        elif report.status in _FAILED_STATUSES:
            self._bump(failed=1)
        if report.mask is not None:
            self._emit(report.mask)
        return report

    def process_frame(self, pixels: Any, width: int, height: int, timestamp: Optional[float] = None) -> bool:
        """
        ``True`` when the frame passed the gate and processing started, even if
        a later stage failed. ``False`` for skipped, invalid or unencodable
        frames and for a pipeline without a model.
        """
        return self.submit_frame(pixels, width, height, timestamp).status not in _REJECTED_STATUSES

    def _accept(self, pixels: Any, width: int, height: int, timestamp: Optional[float]) -> FrameReport:
        if self._state is PipelineState.CLOSED:
            return FrameReport(FrameStatus.CLOSED, self._frame_index, timestamp)
        if timestamp is not None and timestamp == 0:
            _log("pipeline.frame.invalid", error="zero timestamp")
            return FrameReport(FrameStatus.INVALID_FRAME, self._frame_index, timestamp, error="zero timestamp")
        engine = self._engine
        if engine is None or not engine.is_loaded:
            _log("pipeline.frame.not_initialized", error="no model loaded")
            return FrameReport(FrameStatus.NOT_INITIALIZED, self._frame_index, timestamp, error="no model loaded")

        self._valid_frames += 1
        if (self._valid_frames - 1) % self._settings.frame_interval:
            _log("pipeline.frame.interval", valid=self._valid_frames, interval=self._settings.frame_interval)
            return FrameReport(FrameStatus.SKIPPED, self._frame_index, timestamp)

        self._frame_index += 1
        return self._run(engine, pixels, width, height, timestamp)

    def _resolve_output_name(self, engine: InferenceEngine) -> str:
        if self._output_name is None:
            self._output_name = find_output(engine, self._spec.output_name)
        return self._output_name

    def _shape_report(
        self,
        status: FrameStatus,
        exc: FrescoError,
        diagnosis: Optional[ShapeDiagnosis],
        frame_index: int,
        timestamp: Optional[float],
    ) -> FrameReport:
        self._last_diagnosis = diagnosis
        if diagnosis is not None:
            for line in describe_diagnosis(diagnosis, limit=5):
                _log("pipeline.shape.diagnosis", error=line)
        _log("pipeline.frame.shape_failed", error=exc, status=status.value)
        return FrameReport(status, frame_index, timestamp, error=str(exc), diagnosis=diagnosis)

    def _run(
        self,
        engine: InferenceEngine,
        pixels: Any,
        width: int,
        height: int,
        timestamp: Optional[float],
    ) -> FrameReport:
        spec = self._spec
        settings = self._settings
        index = self._frame_index
        started = time.perf_counter()
        input_tensor: Optional[Tensor] = None
        output_tensor: Optional[Tensor] = None
        try:
            self._state = PipelineState.ENCODING
            input_tensor = self._encoder.encode(pixels, width, height, spec)

            self._state = PipelineState.INFERRING
            output_tensor = engine.execute(input_tensor)
            input_tensor.release()
            if output_tensor.name is not None:
                wanted = self._resolve_output_name(engine)
                if output_tensor.name != wanted:
                    output_tensor.release()
                    output_tensor = engine.peek_output(wanted)

            self._state = PipelineState.DECODING
            shape = resolve_output_shape(output_tensor, spec.input_shape, spec.class_count, spec.layout)
            mask = self._decoder.decode(
                output_tensor,
                shape,
                spec.layout,
                settings.target_class_id,
                settings.threshold,
                mode=spec.decode_mode,
                expected_class_count=spec.class_count,
                target_aspect=spec.aspect_ratio,
            )
            output_tensor.release()
            mask.frame_index = index
            mask.timestamp = timestamp

            self._state = PipelineState.STABILIZING
            mask = self._stabilizer.stabilize(mask)
        except EngineBusy as exc:
            _log("pipeline.frame.engine_busy", cause=str(exc))
            return FrameReport(FrameStatus.SKIPPED, index, timestamp)
        except EncodingError as exc:
            _log("pipeline.frame.encoding_failed", error=exc)
            return FrameReport(FrameStatus.ENCODING_ERROR, index, timestamp, error=str(exc))
        except NotInitialized as exc:
            _log("pipeline.frame.not_initialized", error=exc)
            return FrameReport(FrameStatus.NOT_INITIALIZED, index, timestamp, error=str(exc))
        except (InferenceFailure, OutputNotFound) as exc:
            _log("pipeline.frame.inference_failed", error=exc)
            return FrameReport(FrameStatus.INFERENCE_FAILURE, index, timestamp, error=str(exc))
        except FormatMismatch as exc:
            return self._shape_report(FrameStatus.FORMAT_MISMATCH, exc, exc.diagnosis, index, timestamp)
        except ShapeMismatch as exc:
            return self._shape_report(FrameStatus.SHAPE_ERROR, exc, exc.diagnosis, index, timestamp)
        except InvalidShape as exc:
            diagnosis = None
            if output_tensor is not None and not output_tensor.released:
                diagnosis = diagnose_shape_mismatch(
                    output_tensor.size,
                    spec.class_count,
                    target_aspect=spec.aspect_ratio,
                    preferred_layout=spec.layout,
                )
            status = FrameStatus.FORMAT_MISMATCH if diagnosis and diagnosis.format_mismatch else FrameStatus.SHAPE_ERROR
            return self._shape_report(status, exc, diagnosis, index, timestamp)
        except Exception as exc:
            _log("pipeline.frame.unexpected_error", error=repr(exc), state=self._state.value)
            return FrameReport(FrameStatus.INTERNAL_ERROR, index, timestamp, error=str(exc))
        finally:
            if input_tensor is not None:
                input_tensor.release()
            if output_tensor is not None:
                output_tensor.release()

        latency_ms = (time.perf_counter() - started) * 1000.0
        coverage = mask.coverage()
        with self._stats_lock:
            self._stats.processed += 1
            self._stats.last_coverage = coverage
            self._stats.latencies_ms.append(latency_ms)
        self._last_diagnosis = None
        self._last_mask = mask
        _log("pipeline.frame.done", frame=index, coverage=f"{coverage:.3f}", latency_ms=f"{latency_ms:.1f}")
        return FrameReport(FrameStatus.ACCEPTED, index, timestamp, mask=mask.snapshot(), latency_ms=latency_ms)

    # ------------------------------------------------------------------ #
    # admin (blocks until the in-flight frame, if any, finishes)
    # ------------------------------------------------------------------ #
    def set_target_class(self, class_id: int) -> None:
        class_id = int(class_id)
        if class_id < 0:
            raise ValueError(f"target class must be >= 0, got {class_id}")
        with self._lock:
            if class_id != self._settings.target_class_id:
                self._settings.target_class_id = class_id
                self._stabilizer.reset()
            _log("pipeline.admin.target_class", value=class_id)

    def set_threshold(self, threshold: float) -> None:
        with self._lock:
            self._settings.threshold = float(threshold)
            _log("pipeline.admin.threshold", value=threshold)

    def set_smoothing(self, enabled: bool) -> None:
        with self._lock:
            self._settings.stabilizer.enabled = bool(enabled)
            self._stabilizer.set_enabled(enabled)
            _log("pipeline.admin.smoothing", enabled=bool(enabled))

    def reset_temporal_state(self) -> None:
        with self._lock:
            self._stabilizer.reset()
            _log("pipeline.admin.reset_temporal_state")

    def reconfigure(self, io_spec: ModelIOSpec) -> None:
        """Swap the model I/O contract; temporal state and output lookup start over."""
        with self._lock:
            if self._state is PipelineState.CLOSED:
                raise NotInitialized("Pipeline is closed.")
            self._spec = io_spec
            self._decoder.mode = io_spec.decode_mode
            self._output_name = None
            self._last_diagnosis = None
            self._stabilizer.reset()
            _log("pipeline.admin.reconfigure", spec=io_spec.describe())

    def close(self) -> None:
        with self._lock:
            if self._state is PipelineState.CLOSED:
                return
            self._state = PipelineState.CLOSED
            engine, self._engine = self._engine, None
            self._stabilizer.reset()
            self._last_mask = None
        with self._listeners_lock:
            self._listeners.clear()
        if engine is not None:
            engine.close()
        _log("pipeline.closed")

    def __enter__(self) -> "SegmentationPipeline":
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
