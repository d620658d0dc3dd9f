"""Compression backends run inside the worker process.

A backend is loaded from a ``module:Class`` entry reference given at spawn
time. It receives the raw image bytes plus options and returns the output of
whichever of its tools produced the smallest result.
"""
from __future__ import annotations

import io
import time
from importlib import import_module
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .errors import BackendError
from .logging import get_logger
from .models import CompressionOptions, CompressionOutcome, ToolResult

logger = get_logger("imgpress.backends")


class CompressionBackend:
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        self.params = params or {}

    def prepare(self):
        """Lightweight initialization (parse params, probe codecs)."""
        return True

    def compress(self, data: bytes, options: CompressionOptions) -> CompressionOutcome:  # pragma: no cover - base
        raise NotImplementedError


def _resize(img: Image.Image, options: CompressionOptions) -> Image.Image:
    if not options.max_width and not options.max_height:
        return img
    w, h = img.size
    bound = (options.max_width or w, options.max_height or h)
    if w <= bound[0] and h <= bound[1]:
        return img
    out = img.copy()
    try:
        resample = Image.Resampling.LANCZOS
    except AttributeError:
        resample = Image.LANCZOS
    out.thumbnail(bound, resample=resample)
    return out


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)


class PillowBackend(CompressionBackend):
    """Multi-tool backend built on Pillow encoders.

    params:
      tools: optional list restricting which of TOOLS to try
    """

    TOOLS = ("pillow-jpeg", "pillow-png", "pillow-webp")

    def prepare(self):
        wanted = self.params.get("tools") or list(self.TOOLS)
        unknown = [t for t in wanted if t not in self.TOOLS]
        if unknown:
            raise BackendError(f"Unknown tools: {', '.join(unknown)}")
        self.tools: List[str] = list(wanted)
        return True

    def _encoders(self) -> Dict[str, Callable[[Image.Image, CompressionOptions, Optional[bytes]], Optional[bytes]]]:
        return {
            "pillow-jpeg": self._encode_jpeg,
            "pillow-png": self._encode_png,
            "pillow-webp": self._encode_webp,
        }

    @staticmethod
    def _save(img: Image.Image, fmt: str, **kwargs) -> bytes:
        buf = io.BytesIO()
        img.save(buf, format=fmt, **{k: v for k, v in kwargs.items() if v is not None})
        return buf.getvalue()

    def _encode_jpeg(self, img, options, exif):
        if _has_alpha(img):
            return None  # JPEG would drop transparency
        rgb = img if img.mode in ("RGB", "L") else img.convert("RGB")
        return self._save(rgb, "JPEG", quality=int(options.quality * 100), optimize=True, progressive=True, exif=exif)

    def _encode_png(self, img, options, exif):
        src = img
        if options.quality < 1 and img.mode in ("RGB", "RGBA"):
            src = img.quantize(colors=max(2, int(256 * options.quality)))
        return self._save(src, "PNG", optimize=True, exif=exif)

    def _encode_webp(self, img, options, exif):
        src = img if img.mode in ("RGB", "RGBA") else img.convert("RGBA" if _has_alpha(img) else "RGB")
        return self._save(src, "WEBP", quality=int(options.quality * 100), method=4, exif=exif)

    def compress(self, data: bytes, options: CompressionOptions) -> CompressionOutcome:
        if not hasattr(self, "tools"):
            self.prepare()
        started = time.perf_counter()
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise BackendError(f"Unsupported image: {e}") from e
        exif = img.info.get("exif") if options.preserve_exif else None
        img = _resize(img, options)

        encoders = self._encoders()
        results: List[ToolResult] = []
        outputs: Dict[str, bytes] = {}
        for tool in self.tools:
            t0 = time.perf_counter()
            try:
                out = encoders[tool](img, options, exif)
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"tool {tool} failed: {e}")
                continue
            if out is None:
                continue
            outputs[tool] = out
            results.append(ToolResult.measure(tool, len(data), len(out), (time.perf_counter() - t0) * 1000.0))
        if not results:
            raise BackendError("Compression failed: no valid results returned")
        best = min(results, key=lambda r: r.compressed_size)
        return CompressionOutcome(
            best_tool=best.tool,
            data=outputs[best.tool],
            results=results,
            total_duration_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )


class FixedRatioBackend(CompressionBackend):
    """Deterministic backend for smoke runs: keeps a prefix of the input.

    params:
      tool: tool name to report (default "mock")
      ratio: fraction of bytes to keep (default 0.5)
      delay_s: optional artificial latency
    """

    def prepare(self):
        ratio = float(self.params.get("ratio", 0.5))
        if not (0 <= ratio <= 1):
            raise BackendError(f"ratio must be within [0, 1], got {ratio}")
        self.ratio = ratio
        self.tool = str(self.params.get("tool", "mock"))
        self.delay_s = float(self.params.get("delay_s", 0.0))
        return True

    def compress(self, data: bytes, options: CompressionOptions) -> CompressionOutcome:
        if not hasattr(self, "ratio"):
            self.prepare()
        start = time.perf_counter()
        if self.delay_s:
            time.sleep(self.delay_s)
        out = data[: int(len(data) * self.ratio)]
        elapsed = (time.perf_counter() - start) * 1000.0
        result = ToolResult.measure(self.tool, len(data), len(out), elapsed)
        return CompressionOutcome(best_tool=self.tool, data=out, results=[result], total_duration_ms=result.duration_ms)


def _split_entry(entry: str) -> Tuple[str, str]:
    if ":" not in entry:
        raise BackendError(f"backend entry must be 'module:Class', got {entry!r}")
    module_name, class_name = entry.split(":", 1)
    return module_name, class_name


def load_backend(entry: str, params: Optional[Dict[str, Any]] = None) -> CompressionBackend:
    module_name, class_name = _split_entry(entry)
    try:
        mod = import_module(module_name)
    except ImportError as e:
        raise BackendError(f"Cannot import backend module {module_name}: {e}") from e
    cls = getattr(mod, class_name, None)
    if not isinstance(cls, type) or not issubclass(cls, CompressionBackend):
        raise BackendError(f"{entry} is not a CompressionBackend")
    backend = cls(params or {})
    backend.prepare()
    return backend


__all__ = ["CompressionBackend", "PillowBackend", "FixedRatioBackend", "load_backend"]
