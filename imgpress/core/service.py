"""CompressionService: coordinator + file registry + progress, wired explicitly.

compress() submits the image to the worker, persists the best result into the
managed temp directory, registers it and returns stats carrying an opaque
token. Nothing here hands out raw paths.
"""
from __future__ import annotations

import re
import secrets
import stat
import threading
import time
import uuid
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Optional

from .config import Settings
from .coordinator import Coordinator
from .errors import CompressionFailedError, InitializationError, RequestTimeoutError
from .file_registry import FileRegistry
from .logging import core_logger
from .models import CompressionOptions, CompressionStats, ProgressEvent, reduction_percent
from .progress import ProgressBroadcaster
from .resource_gate import ResourceGate

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_component(value: str, fallback: str) -> str:
    cleaned = _UNSAFE.sub("_", value).strip("._")
    return cleaned[:80] or fallback


def output_filename(original: str, tool: str) -> str:
    """<stem>_<tool>_<ms timestamp>_<rand><ext>, stripped of any directory part."""
    name = Path(original.replace("\\", "/")).name
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        stem, ext = name, ""
    stem = _safe_component(stem, "image")
    ext = ("." + _safe_component(ext, "")) if ext else ""
    if ext == ".":
        ext = ""
    return f"{stem}_{_safe_component(tool, 'tool')}_{int(time.time() * 1000)}_{secrets.token_hex(3)}{ext}"


def ensure_temp_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / f".probe-{uuid.uuid4().hex}"
        probe.write_bytes(b"")
        probe.unlink()
    except OSError as e:
        raise InitializationError(f"Failed to initialize temp directory {path}: {e}") from e
    return path


class CompressionService:
    def __init__(
        self,
        settings: Settings,
        coordinator: Coordinator,
        registry: FileRegistry,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ):
        self.settings = settings
        self.coordinator = coordinator
        self.registry = registry
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.temp_dir = settings.temp_path
        self.gate = ResourceGate(registry, self.temp_dir)
        self._store_lock = threading.Lock()  # write+register vs. the unregistered-file sweep

    def start(self):
        ensure_temp_dir(self.temp_dir)
        core_logger.info(f"temp directory ready: {self.temp_dir}")
        self.coordinator.start()

    def close(self):
        self.coordinator.shutdown()
        if self.settings.cleanup_on_exit:
            self.sweep(0)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()

    def compress(
        self,
        data: bytes,
        filename: str,
        options: Optional[CompressionOptions] = None,
        timeout: Optional[float] = None,
    ) -> CompressionStats:
        self.broadcaster.publish(ProgressEvent(filename, "started", {"size": len(data)}))
        try:
            stats = self._compress(data, filename, options, timeout)
        except Exception as e:
            self.broadcaster.publish(ProgressEvent(filename, "error", {"error": str(e)}))
            raise
        self.broadcaster.publish(ProgressEvent(filename, "completed", stats.to_dict()))
        return stats

    def _compress(self, data, filename, options, timeout) -> CompressionStats:
        wait = self.settings.request_timeout_s if timeout is None else timeout
        future = self.coordinator.submit(data, filename, options, timeout=wait)
        try:
            # the coordinator's own deadline settles the future; the margin only guards a stuck timer
            response = future.result(timeout=wait + 5.0)
        except FutureTimeoutError as e:
            raise RequestTimeoutError(f"No response for {filename}") from e
        if not response.ok:
            raise CompressionFailedError(response.error or "Compression failed")

        out_path = self.temp_dir / output_filename(filename, response.best_tool or "unknown")
        compressed_size = len(response.data or b"")
        with self._store_lock:
            self._store(out_path, response.data or b"", filename)
            token = self.registry.register(out_path, filename, response.best_tool, len(data), compressed_size)
        stats = CompressionStats(
            token=token,
            filename=filename,
            best_tool=response.best_tool,
            original_size=len(data),
            compressed_size=compressed_size,
            compression_ratio=reduction_percent(len(data), compressed_size),
            total_duration_ms=response.total_duration_ms,
            results=list(response.results),
        )
        core_logger.info(
            f"compressed {filename} with {stats.best_tool}: "
            f"{stats.original_size}->{stats.compressed_size} bytes ({stats.compression_ratio:.1f}%)"
        )
        return stats

    @staticmethod
    def _store(out_path: Path, data: bytes, filename: str):
        try:
            out_path.write_bytes(data)
        except OSError as e:
            try:
                out_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as cleanup_error:
                core_logger.warning(f"could not remove partial output {out_path}: {cleanup_error}")
            raise CompressionFailedError(f"Failed to store result for {filename}: {e}") from e

    def compress_path(self, path: Path | str, options: Optional[CompressionOptions] = None) -> CompressionStats:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise CompressionFailedError(f"Failed to read input file: {e}") from e
        return self.compress(data, path.name, options)

    def evict(self, token: str) -> bool:
        return self.registry.evict(token)

    def sweep(self, max_age_hours: Optional[float] = None) -> int:
        """Evict registered artifacts, then unregistered files, older than max_age_hours.

        Unregistered files are leftovers of an earlier run or of a failed unlink.
        """
        hours = self.settings.max_age_hours if max_age_hours is None else max_age_hours
        removed = self.registry.sweep(hours)
        return removed + self._sweep_unregistered(hours)

    def _sweep_unregistered(self, max_age_hours: float) -> int:
        cutoff = time.time() - max_age_hours * 3600.0
        removed = 0
        with self._store_lock:
            known = {Path(a.path).name for a in self.registry.list()}
            try:
                entries = list(self.temp_dir.iterdir())
            except FileNotFoundError:
                return 0
            for entry in entries:
                if entry.name in known:
                    continue
                try:
                    st = entry.lstat()
                    if not (stat.S_ISREG(st.st_mode) or stat.S_ISLNK(st.st_mode)) or st.st_mtime > cutoff:
                        continue
                    entry.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    core_logger.warning(f"sweep: could not delete {entry}: {e}")
                    continue
                removed += 1
        if removed:
            core_logger.info(f"sweep removed {removed} unregistered file(s) from {self.temp_dir}")
        return removed


def build_service(settings: Settings, broadcaster: Optional[ProgressBroadcaster] = None) -> CompressionService:
    return CompressionService(settings, Coordinator(settings), FileRegistry(), broadcaster)


__all__ = ["CompressionService", "build_service", "ensure_temp_dir", "output_filename"]
