"""
Mask sinks:
  * MaskDirectorySink : numbered grayscale PNGs (``mask_000001.png`` ...),
  * MaskVideoSink     : grayscale video through ``cv2.VideoWriter`` with codec fallback,
  * MultiSink         : broadcast to several sinks.

Sinks take ``SegmentationMask`` objects, so they can be registered directly as
pipeline listeners (``pipeline.add_listener(sink.write)``).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Protocol, Tuple, Union

import numpy as np

try:
    import cv2  # type: ignore
except Exception:  # pragma: no cover
    cv2 = None  # type: ignore

from .mask import SegmentationMask

__all__ = ["MaskDirectorySink", "MaskSink", "MaskVideoSink", "MultiSink"]

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

_VIDEO_CODECS: Tuple[str, ...] = ("mp4v", "avc1", "MJPG")


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class MaskSink(Protocol):
    def write(self, mask: SegmentationMask) -> None: ...
    def close(self) -> None: ...


def _require_cv2() -> Any:
    if cv2 is None:
        raise RuntimeError("OpenCV is required for mask sinks (pip install opencv-python-headless).")
    return cv2


class MaskDirectorySink:
    """Write each mask as a numbered grayscale PNG (``mask_000001.png``, ...)."""

    def __init__(self, directory: Union[str, Path], *, prefix: str = "mask") -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self.written = 0
        self.paths: List[Path] = []

    def write(self, mask: SegmentationMask) -> None:
        cv = _require_cv2()
        self.written += 1
        path = self.directory / f"{self.prefix}_{self.written:06d}.png"
        if not cv.imwrite(str(path), np.ascontiguousarray(mask.data)):
            raise OSError(f"cv2.imwrite failed for {path}")
        self.paths.append(path)

    def close(self) -> None:
        _log("fresco.sink.directory.closed", path=self.directory, written=self.written)


class MaskVideoSink:
    """
    Grayscale mask video. The writer opens lazily on the first mask (its size
    fixes the frame size); masks of another size are resized to match.
    """

    def __init__(self, path: Union[str, Path], fps: float = 30.0) -> None:
        self.path = Path(path)
        self.fps = float(max(1.0, fps))
        self.size: Optional[Tuple[int, int]] = None
        self.codec: Optional[str] = None
        self.written = 0
        self._writer: Optional[Any] = None

    def _open(self, size: Tuple[int, int]) -> None:
        cv = _require_cv2()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for name in _VIDEO_CODECS:
            fourcc = int(cv.VideoWriter_fourcc(*name))
            writer = cv.VideoWriter(str(self.path), fourcc, self.fps, size, False)
            if writer.isOpened():
                self._writer = writer
                self.codec = name
                self.size = size
                _log("fresco.sink.video.opened", path=self.path, codec=name, size=f"{size[0]}x{size[1]}")
                return
            writer.release()
        raise RuntimeError(f"No video codec could open {self.path} (tried {', '.join(_VIDEO_CODECS)}).")

    def write(self, mask: SegmentationMask) -> None:
        if self._writer is None:
            self._open((mask.width, mask.height))
        assert self._writer is not None and self.size is not None
        frame = np.ascontiguousarray(mask.data)
        if (mask.width, mask.height) != self.size:
            frame = cv2.resize(frame, self.size, interpolation=cv2.INTER_NEAREST)
        self._writer.write(frame)
        self.written += 1

    def close(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None
            _log("fresco.sink.video.closed", path=self.path, frames=self.written)


class MultiSink:
    def __init__(self, *sinks: Optional[MaskSink]) -> None:
        self.sinks = [s for s in sinks if s is not None]

    def write(self, mask: SegmentationMask) -> None:
        for sink in self.sinks:
            sink.write(mask)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()
