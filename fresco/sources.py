"""
Frame sources feeding the pipeline.

Every source yields ``(rgb_frame, timestamp)`` pairs. A timestamp of ``0``
marks a frame the camera could not time-stamp; the pipeline rejects those.
``synthetic_source`` is deterministic and needs only numpy, which makes it
the source of choice for CI and headless runs.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Iterator, Optional, Protocol, Tuple, Union

import numpy as np
from numpy.typing import NDArray

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover
    cv2 = None  # type: ignore

__all__ = ["FrameSource", "open_camera", "synthetic_source"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

NDArrayU8 = NDArray[np.uint8]
FramePacket = Tuple[NDArrayU8, float]


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class FrameSource(Protocol):
    def frames(self) -> Iterator[FramePacket]: ...
    def release(self) -> None: ...


class _CVCamera:
    """``cv2.VideoCapture`` wrapper; frames come out RGB."""

    def __init__(
        self,
        source: Union[str, int],
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[int] = None,
    ) -> None:
        assert cv2 is not None
        target: Union[str, int] = int(source) if isinstance(source, str) and source.isdigit() else source
        self._cap = cv2.VideoCapture(target)
        if not self._cap.isOpened():
            self._cap.release()
            raise RuntimeError(f"Unable to open capture source {source!r}.")
        if width:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
        if height:
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))
        if fps:
            self._cap.set(cv2.CAP_PROP_FPS, int(fps))
        self.source = source
        _log("fresco.camera.opened", source=str(source), width=width, height=height, fps=fps)

    def frames(self) -> Iterator[FramePacket]:
        while True:
            ok, frame = self._cap.read()
            if not ok or frame is None:
                _log("fresco.camera.eof", source=str(self.source))
                return
            arr = np.asarray(frame)
            if arr.ndim == 2:
                rgb = cv2.cvtColor(arr, cv2.COLOR_GRAY2RGB)
            elif arr.shape[2] == 4:
                rgb = cv2.cvtColor(arr, cv2.COLOR_BGRA2RGB)
            else:
                rgb = cv2.cvtColor(arr, cv2.COLOR_BGR2RGB)
            yield np.ascontiguousarray(rgb, dtype=np.uint8), time.time()

    def release(self) -> None:
        try:
            self._cap.release()
        finally:
            _log("fresco.camera.released", source=str(self.source))


class _SyntheticSource:
    """
    A flat "wall" block on the left, a moving gradient on the right.

    With ``realtime=False`` frames are produced as fast as they are consumed
    and time-stamped ``n / fps`` (starting at ``1 / fps``), so runs are
    reproducible.
    """

    def __init__(
        self,
        size: Tuple[int, int] = (640, 480),
        fps: int = 30,
        *,
        count: Optional[int] = None,
        realtime: bool = False,
    ) -> None:
        self.w, self.h = int(size[0]), int(size[1])
        if self.w <= 0 or self.h <= 0:
            raise ValueError(f"Synthetic frame size must be positive, got {size}.")
        self.fps = max(1, int(fps))
        self.count = None if count is None else max(0, int(count))
        self.realtime = bool(realtime)
        self._n = 0
        _log("fresco.camera.synthetic", size=f"{self.w}x{self.h}", fps=self.fps, count=self.count)

    def _render(self, phase: float) -> NDArrayU8:
        y = np.linspace(0, 255, self.h, dtype=np.float32)[:, None]
        x = np.linspace(0, 255, self.w, dtype=np.float32)[None, :]
        base = (y + x) / 2.0
        shift = (math.sin(phase) + 1.0) * 64.0
        frame = np.empty((self.h, self.w, 3), dtype=np.uint8)
        frame[:, :, 0] = np.mod(base + shift, 256).astype(np.uint8)
        frame[:, :, 1] = base.astype(np.uint8)
        frame[:, :, 2] = np.mod(base + shift * 0.5, 256).astype(np.uint8)
        frame[:, : self.w // 2] = (200, 190, 170)
        return frame

    def frames(self) -> Iterator[FramePacket]:
        period = 1.0 / self.fps
        t0 = time.time()
        while self.count is None or self._n < self.count:
            self._n += 1
            if self.realtime:
                now = time.time()
                yield self._render(now - t0), now
                delay = period - (time.time() - now)
                if delay > 0:
                    time.sleep(delay)
            else:
                stamp = self._n * period
                yield self._render(stamp), stamp

    def release(self) -> None:
        return


def open_camera(
    source: Union[str, int],
    *,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fps: Optional[int] = None,
) -> FrameSource:
    """Open a camera index, video file or stream URL through OpenCV."""
    if cv2 is None:
        raise RuntimeError("OpenCV not available. Install opencv-python-headless or use synthetic_source().")
    return _CVCamera(source, width=width, height=height, fps=fps)


def synthetic_source(
    size: Tuple[int, int] = (640, 480),
    fps: int = 30,
    *,
    count: Optional[int] = None,
    realtime: bool = False,
) -> FrameSource:
    return _SyntheticSource(size=size, fps=fps, count=count, realtime=realtime)
