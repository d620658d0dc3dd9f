"""Coordinator: owns the compression worker subprocess and request correlation.

Lifecycle:
    UNINITIALIZED -> STARTING -> READY -> TERMINATED
    STARTING -> FAILED (spawn error / handshake timeout / early exit)
    READY -> FAILED (worker exited unexpectedly; all pending rejected)
    FAILED | TERMINATED -> STARTING via explicit restart()

Every submit() returns a concurrent.futures.Future that settles exactly once:
with the matching CompressionResponse, or with RequestTimeoutError,
WorkerCrashError, ShutdownError, SerializationError or CoordinatorStateError.
Whoever pops the pending entry under the lock settles the future.

Frames reach the worker through a writer thread fed by a queue; the lock is
never held across a pipe write, so a worker that stops reading stdin stalls
only that thread.
"""
from __future__ import annotations

import json
import queue
import subprocess
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .channel import MessageChannel
from .config import Settings
from .errors import (
    ChannelClosedError,
    CompressorError,
    CoordinatorStateError,
    InitializationError,
    RequestTimeoutError,
    SerializationError,
    ShutdownError,
    WorkerCrashError,
)
from .logging import core_logger, summarize_for_log
from .models import CompressionOptions, CompressionRequest, CompressionResponse, WorkerState
from .protocol import READY, Envelope, parse_response, request_envelope

WORKER_MODULE = "imgpress.core.worker_entry"


@dataclass
class PendingRequest:
    correlation_id: str
    future: Future
    deadline: float
    timer: Optional[threading.Timer] = None
    request: Optional[CompressionRequest] = None  # kept only until written
    submitted: float = field(default_factory=time.monotonic)


def default_spawn(settings: Settings, cwd: Optional[Path] = None) -> subprocess.Popen:
    cmd = [
        settings.python,
        "-m",
        WORKER_MODULE,
        "--backend",
        settings.backend,
        "--params",
        json.dumps(settings.backend_params),
    ]
    core_logger.debug(f"spawn worker cmd={' '.join(cmd)}")
    return subprocess.Popen(
        cmd,
        cwd=str(cwd) if cwd else None,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
        encoding="utf-8",
    )


class Coordinator:
    def __init__(
        self,
        settings: Settings,
        spawn: Optional[Callable[[], Any]] = None,
        cwd: Optional[Path] = None,
    ):
        self.settings = settings
        self._spawn = spawn or (lambda: default_spawn(settings, cwd=cwd))
        self._lock = threading.RLock()
        self._state = WorkerState.UNINITIALIZED
        self._pending: Dict[str, PendingRequest] = {}
        self._queued: List[str] = []  # submitted while STARTING, in order
        self._proc = None
        self._channel: Optional[MessageChannel] = None
        self._reader: Optional[threading.Thread] = None
        self._writer: Optional[threading.Thread] = None
        self._outbox: Optional[queue.Queue] = None  # correlation ids awaiting a write; None stops the writer
        self._settled = threading.Event()  # ready observed or worker gone
        self._closing = False
        self._counters = {"submitted": 0, "completed": 0, "timed_out": 0, "late_responses": 0, "crashes": 0}

    # ---- introspection ------------------------------------------------------
    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "pid": getattr(self._proc, "pid", None),
                "pending": len(self._pending),
                "queued": len(self._queued),
                **self._counters,
            }

    # ---- lifecycle ----------------------------------------------------------
    def start(self):
        with self._lock:
            if self._state != WorkerState.UNINITIALIZED:
                raise CoordinatorStateError(f"start() not allowed in state {self._state.value}")
            self._state = WorkerState.STARTING
            self._settled.clear()
            self._closing = False
        core_logger.info(f"starting worker backend={self.settings.backend}")
        try:
            proc = self._spawn()
        except (OSError, ValueError, CompressorError) as e:
            self._fail_start(f"Failed spawning worker: {e}")
            raise InitializationError(f"Failed spawning worker: {e}") from e
        with self._lock:
            self._proc = proc
            self._channel = MessageChannel(proc.stdout, proc.stdin, name="coordinator")
            self._outbox = queue.Queue()
            self._reader = threading.Thread(target=self._read_loop, name="imgpress-reader", daemon=True)
            self._writer = threading.Thread(
                target=self._write_loop, args=(self._channel, self._outbox), name="imgpress-writer", daemon=True
            )
            self._reader.start()
            self._writer.start()

        if not self._settled.wait(self.settings.handshake_timeout_s):
            msg = f"Worker handshake timed out after {self.settings.handshake_timeout_s}s"
            self._fail_start(msg)
            self._teardown()
            raise InitializationError(msg)
        if self._state != WorkerState.READY:
            msg = "Worker exited before signalling ready"
            self._fail_start(msg)
            raise InitializationError(msg)
        core_logger.info(f"worker ready pid={getattr(proc, 'pid', None)}")

    def _fail_start(self, message: str):
        with self._lock:
            if self._state in (WorkerState.STARTING, WorkerState.FAILED):
                self._state = WorkerState.FAILED
            rejected = self._take_all()
        core_logger.error(message)
        for p in rejected:
            self._settle_exc(p, InitializationError(message))

    def restart(self):
        """Explicit recovery path from FAILED or TERMINATED."""
        with self._lock:
            if self._state not in (WorkerState.FAILED, WorkerState.TERMINATED):
                raise CoordinatorStateError(f"restart() not allowed in state {self._state.value}")
        self._teardown()
        with self._lock:
            self._state = WorkerState.UNINITIALIZED
        self.start()

    def shutdown(self, timeout: float = 5.0):
        with self._lock:
            if self._state == WorkerState.TERMINATED:
                return
            self._closing = True
            self._state = WorkerState.TERMINATED
            rejected = self._take_all()
        if rejected:
            core_logger.info(f"shutdown: rejecting {len(rejected)} pending request(s)")
        for p in rejected:
            self._settle_exc(p, ShutdownError("Coordinator shut down"))
        self._teardown(timeout)
        core_logger.info("coordinator terminated")

    def _teardown(self, timeout: float = 5.0):
        proc = self._proc
        # kill first: a write stuck on a full pipe then fails with a broken pipe
        self._kill_process()
        if self._outbox is not None:
            self._outbox.put(None)
        if self._channel is not None:
            self._channel.close(timeout=timeout)
        self._wait_process(timeout)
        current = threading.current_thread()
        for thread in (self._reader, self._writer):
            if thread is not None and thread is not current:
                thread.join(timeout)
        reader = self._reader
        stdout = getattr(proc, "stdout", None)
        if stdout is not None and (reader is None or not reader.is_alive()):
            try:
                stdout.close()
            except (OSError, ValueError):
                pass
        with self._lock:
            self._pending.clear()
            self._queued.clear()
            self._channel = None
            self._reader = None
            self._writer = None
            self._outbox = None
            self._proc = None

    def _kill_process(self):
        proc = self._proc
        if proc is None:
            return
        try:
            if proc.poll() is None:
                proc.kill()
        except OSError as e:
            core_logger.warning(f"could not kill worker: {e}")

    def _wait_process(self, timeout: float):
        proc = self._proc
        if proc is None:
            return
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            core_logger.warning(f"worker did not exit cleanly: {e}")

    # ---- submission ---------------------------------------------------------
    def submit(
        self,
        image: bytes,
        filename: str,
        options: Optional[CompressionOptions] = None,
        timeout: Optional[float] = None,
    ) -> Future:
        fut: Future = Future()
        fut.set_running_or_notify_cancel()
        timeout = self.settings.request_timeout_s if timeout is None else timeout
        with self._lock:
            if self._state not in (WorkerState.READY, WorkerState.STARTING):
                fut.set_exception(CoordinatorStateError(f"Worker not ready (state={self._state.value})"))
                return fut
            cid = uuid.uuid4().hex
            while cid in self._pending:
                cid = uuid.uuid4().hex
            req = CompressionRequest(correlation_id=cid, image=bytes(image), filename=filename, options=options or CompressionOptions())
            pending = PendingRequest(correlation_id=cid, future=fut, deadline=time.monotonic() + timeout, request=req)
            pending.timer = threading.Timer(timeout, self._expire, args=(cid,))
            pending.timer.daemon = True
            self._pending[cid] = pending
            self._counters["submitted"] += 1
            pending.timer.start()
            if self._state == WorkerState.STARTING:
                self._queued.append(cid)
                core_logger.debug(f"queued cid={cid} until worker ready")
                return fut
            self._dispatch(pending)
        return fut

    def _dispatch(self, pending: PendingRequest):
        # caller holds self._lock; never blocks
        if self._outbox is None:
            popped = self._pending.pop(pending.correlation_id, None)
            if popped is not None:
                self._settle_exc(popped, WorkerCrashError("Worker channel is not open"))
            return
        self._outbox.put(pending.correlation_id)

    def _write_loop(self, channel: MessageChannel, outbox: queue.Queue):
        while True:
            cid = outbox.get()
            if cid is None:
                return
            with self._lock:
                pending = self._pending.get(cid)
                if pending is None or pending.request is None:
                    continue  # expired or rejected before reaching the pipe
                req, pending.request = pending.request, None
            try:
                channel.send(request_envelope(req))
            except (ChannelClosedError, SerializationError) as e:
                with self._lock:
                    popped = self._pending.pop(cid, None)
                if popped is not None:
                    exc = e if isinstance(e, SerializationError) else WorkerCrashError(f"Worker channel closed: {e}")
                    self._settle_exc(popped, exc)
                continue
            core_logger.debug(f"dispatched cid={cid} file={req.filename} bytes={len(req.image)}")

    def _expire(self, cid: str):
        with self._lock:
            pending = self._pending.pop(cid, None)
            if pending is None:
                return
            if cid in self._queued:
                self._queued.remove(cid)
            self._counters["timed_out"] += 1
        core_logger.warning(f"request timed out cid={cid}")
        self._settle_exc(pending, RequestTimeoutError(f"No response for request {cid} within deadline"))

    # ---- receiving ----------------------------------------------------------
    def _read_loop(self):
        channel = self._channel
        while channel is not None:
            try:
                env = channel.receive()
            except SerializationError as e:
                self._on_bad_frame(e)
                continue
            if env is None:
                break
            if env.type == READY:
                self._on_ready()
            else:
                self._on_response(env)
        self._on_channel_closed()

    def _on_ready(self):
        with self._lock:
            if self._state != WorkerState.STARTING:
                core_logger.debug(f"ignoring ready in state {self._state.value}")
                return
            self._state = WorkerState.READY
            queued, self._queued = self._queued, []
            for cid in queued:
                pending = self._pending.get(cid)
                if pending is not None:
                    self._dispatch(pending)
        self._settled.set()

    def _on_response(self, env: Envelope):
        cid = env.correlation_id or ""
        with self._lock:
            pending = self._pending.pop(cid, None)
            if pending is None:
                self._counters["late_responses"] += 1
            else:
                self._counters["completed"] += 1
        if pending is None:
            core_logger.debug(f"discarding response for unknown cid={cid} type={env.type}")
            return
        try:
            response: CompressionResponse = parse_response(env)
        except SerializationError as e:
            core_logger.warning(f"bad response payload cid={cid}: {e} payload={summarize_for_log(env.payload)}")
            self._settle_exc(pending, e)
            return
        if pending.timer is not None:
            pending.timer.cancel()
        pending.future.set_result(response)

    def _on_bad_frame(self, e: SerializationError):
        core_logger.warning(f"malformed frame from worker: {e}")
        if not e.correlation_id:
            return
        with self._lock:
            pending = self._pending.pop(e.correlation_id, None)
        if pending is not None:
            self._settle_exc(pending, e)

    def _on_channel_closed(self):
        proc = self._proc
        exit_code = proc.poll() if proc is not None else None
        with self._lock:
            if self._closing or self._state not in (WorkerState.STARTING, WorkerState.READY):
                self._settled.set()
                return
            self._state = WorkerState.FAILED
            self._counters["crashes"] += 1
            rejected = self._take_all()
        core_logger.error(f"worker exited unexpectedly exit_code={exit_code}; rejecting {len(rejected)} pending")
        for p in rejected:
            self._settle_exc(p, WorkerCrashError(f"Worker exited unexpectedly (exit_code={exit_code})", exit_code))
        self._settled.set()

    # ---- helpers ------------------------------------------------------------
    def _take_all(self) -> List[PendingRequest]:
        # caller holds self._lock
        taken = list(self._pending.values())
        self._pending.clear()
        self._queued.clear()
        return taken

    @staticmethod
    def _settle_exc(pending: PendingRequest, exc: BaseException):
        if pending.timer is not None:
            pending.timer.cancel()
        pending.future.set_exception(exc)


__all__ = ["Coordinator", "PendingRequest", "default_spawn", "WORKER_MODULE"]
