"""
Lightweight package init.

Avoid importing heavy optional deps (ONNX Runtime, OpenCV) at import time.
CLI and submodules import what they need locally.

Exports:
    __version__ : best-effort package version (falls back to "0+unknown")
"""

from __future__ import annotations

from importlib.metadata import version as _pkg_version

__all__ = ["__version__"]


def _detect_version() -> str:
    """
    Try both "Fresco" and normalized "fresco" distribution names,
    since metadata names are case-insensitive but may vary in CI.
    """
    for dist in ("Fresco", "fresco"):
        try:
            return _pkg_version(dist)
        except Exception:
            continue
    return "0+unknown"


__version__ = _detect_version()
