"""Minimal logging helpers for Fresco.

* ``setup_logging`` initialises a single file handler on the root logger.
* ``current_log_path`` exposes the file used for logs.
* ``log_event`` renders ``event key=value`` lines, routing failures to ERROR
  and everything else to DEBUG.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional, cast

os.environ.setdefault("ORT_LOGGING_LEVEL", "3")
os.environ.setdefault("ORT_LOGGING_SEVERITY_LEVEL", "3")
try:
    import onnxruntime as _ort  # type: ignore

    if hasattr(_ort, "set_default_logger_severity"):
        cast(Any, _ort).set_default_logger_severity(3)
except Exception:
    pass

__all__ = [
    "current_log_path",
    "log_event",
    "setup_logging",
]

_ERROR_TOKENS = ("error", "fail", "failed", "exception", "mismatch")
_ERROR_KEYS = ("error", "reason")

_configured = False
_log_path: Optional[Path] = None


def _platform_data_dir() -> Path:
    """Return a per-user writable application data directory."""
    app = "fresco"
    if os.name == "nt":
        base = Path(os.getenv("LOCALAPPDATA") or os.getenv("APPDATA") or (Path.home() / "AppData" / "Local"))
        return base / app
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / app
    xdg_home = os.getenv("XDG_DATA_HOME")
    if xdg_home:
        return Path(xdg_home) / app
    return Path.home() / ".local" / "share" / app


def _resolve_log_path(file_env: str) -> Path:
    override = os.getenv(file_env)
    if override:
        path = Path(override).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return path
    logs_dir = _platform_data_dir() / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir / "fresco.log"


def current_log_path() -> Optional[Path]:
    """Return the log file configured by ``setup_logging`` (if any)."""
    return _log_path


def setup_logging(
    *,
    level_env: str = "FRESCO_LOG_LEVEL",
    file_env: str = "FRESCO_LOG_FILE",
) -> Path:
    """
    Configure the root logger with a single file handler.

    ERROR and higher go to ``fresco.log`` (or the path given by
    ``FRESCO_LOG_FILE``) unless ``FRESCO_LOG_LEVEL`` asks for more. Repeated
    calls return the previously configured path without reconfiguring.
    """
    global _configured, _log_path

    if _configured and _log_path is not None:
        return _log_path

    try:
        log_path = _resolve_log_path(file_env)
        handler: logging.Handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError:
        log_path = Path(tempfile.gettempdir()) / "fresco.log"
        handler = logging.FileHandler(log_path, encoding="utf-8")

    level_name = os.getenv(level_env, "ERROR").upper().strip()
    level = getattr(logging, level_name, logging.ERROR)
    if not isinstance(level, int):
        level = logging.ERROR

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    _log_path = log_path
    _configured = True
    return log_path


def log_event(logger: logging.Logger, event: str, **info: object) -> None:
    """
    Emit ``event key=value ...`` on ``logger``.

    Failure-looking events (by name, or by a truthy ``error``/``reason``
    field) are logged at ERROR; routine events at DEBUG.
    """
    event_lower = event.lower()
    is_error = any(token in event_lower for token in _ERROR_TOKENS)
    if not is_error:
        for key in _ERROR_KEYS:
            value = info.get(key)
            if isinstance(value, str):
                if value and value.strip().lower() not in {"ok", "success"}:
                    is_error = True
                    break
            elif value not in (None, 0, False):
                is_error = True
                break
    level = logging.ERROR if is_error else logging.DEBUG
    if not logger.isEnabledFor(level):
        return
    detail = " ".join(f"{key}={info[key]}" for key in sorted(info) if info[key] is not None)
    if detail:
        logger.log(level, "%s %s", event, detail)
    else:
        logger.log(level, "%s", event)
