"""Lightweight logging setup for the compressor core.

Users can override log level with IMGPRESS_LOG_LEVEL env var and add a file
handler with IMGPRESS_LOG_DIR.

Also includes a helper to summarize protocol payloads (which may carry whole
images) for logging without dumping the bytes.
"""
from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Any, Dict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE = "imgpress.log"


def summarize_for_log(obj: Any, *, max_items: int = 8, max_level: int = 2, _level: int = 0) -> Any:
    """Return a compact, JSON-serializable summary suitable for logging.

    - bytes/bytearray: length only
    - str: length and truncated preview
    - dict: keys (truncated) and recursively summarized values up to max_level
    - list/tuple: length and summaries of the first items
    - other scalars: returned directly
    """
    try:
        if obj is None or isinstance(obj, (bool, int, float)):
            return obj
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return {"type": type(obj).__name__, "len": len(obj)}
        if isinstance(obj, str):
            if len(obj) <= 120:
                return obj
            return {"type": "str", "len": len(obj), "preview": obj[:117] + "..."}
        if isinstance(obj, dict):
            if _level >= max_level:
                return {"type": "dict", "len": len(obj)}
            out: Dict[str, Any] = {}
            for k in list(obj.keys())[:max_items]:
                out[str(k)] = summarize_for_log(obj[k], max_items=max_items, max_level=max_level, _level=_level + 1)
            if len(obj) > max_items:
                out["..."] = f"{len(obj) - max_items} more"
            return out
        if isinstance(obj, (list, tuple, set)):
            items = list(obj)
            if _level >= max_level:
                return {"type": type(obj).__name__, "len": len(items)}
            return {
                "type": type(obj).__name__,
                "len": len(items),
                "preview": [
                    summarize_for_log(x, max_items=max_items, max_level=max_level, _level=_level + 1)
                    for x in items[:max_items]
                ],
            }
        return {"type": type(obj).__name__}
    except Exception:
        return {"type": "unprintable"}


_LOGGERS: Dict[str, logging.Logger] = {}


def _attach_file_handler(logger: logging.Logger, log_dir: str):
    target = (Path(log_dir) / LOG_FILE).resolve()
    for h in logger.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == target:
            return
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(target, encoding="utf-8")
    except OSError as e:
        logger.warning(f"file logging disabled ({log_dir}): {e}")
        return
    fh.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(fh)


def get_logger(name: str = "imgpress") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)
        # Optional file handler if IMGPRESS_LOG_DIR is set
        log_dir = os.getenv("IMGPRESS_LOG_DIR")
        if log_dir:
            _attach_file_handler(logger, log_dir)
        logger.setLevel(os.getenv("IMGPRESS_LOG_LEVEL", "INFO").upper())
        logger.propagate = False
        _LOGGERS[name] = logger
    return logger


def configure_file_logging(log_dir: Path | str) -> Path:
    """Send every imgpress logger to <log_dir>/imgpress.log from now on.

    Loggers created at import time missed IMGPRESS_LOG_DIR if it was set later
    (e.g. by the CLI), so the handler is attached to them here. The env var is
    overwritten as well, which worker subprocesses inherit.
    """
    path = Path(log_dir).resolve()
    os.environ["IMGPRESS_LOG_DIR"] = str(path)
    for logger in list(_LOGGERS.values()):
        _attach_file_handler(logger, str(path))
    return path / LOG_FILE


core_logger = get_logger("imgpress.core")

__all__ = ["get_logger", "configure_file_logging", "core_logger", "summarize_for_log", "LOG_FORMAT", "LOG_FILE"]
