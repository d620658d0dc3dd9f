import os
import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from imgpress.core.backends import FixedRatioBackend  # noqa: E402
from imgpress.core.config import Settings  # noqa: E402
from imgpress.core.coordinator import Coordinator  # noqa: E402
from imgpress.core.worker_entry import serve  # noqa: E402


class _GatedWriter:
    """Holds back the worker's first frame (ready) until the gate opens."""

    def __init__(self, stream, gate: threading.Event, on_first):
        self._stream = stream
        self._gate = gate
        self._on_first = on_first
        self._first = True

    def write(self, data):
        if self._first:
            self._first = False
            self._gate.wait(10)
            self._on_first()
        return self._stream.write(data)

    def flush(self):
        return self._stream.flush()

    def close(self):
        return self._stream.close()


class _RecordingWriter:
    """Coordinator-side stdin: records (ready_already_sent, line) per write."""

    def __init__(self, stream, log, ready_sent: threading.Event):
        self._stream = stream
        self._log = log
        self._ready_sent = ready_sent

    def write(self, data):
        self._log.append((self._ready_sent.is_set(), data))
        return self._stream.write(data)

    def flush(self):
        return self._stream.flush()

    def close(self):
        return self._stream.close()


class FakeWorkerProcess:
    """Popen look-alike running a worker loop in a thread over os.pipe pairs.

    By default the loop is the real ``worker_entry.serve``; ``loop`` may replace
    it with any callable taking (reader, writer).
    """

    def __init__(self, backend=None, hold_ready=False, loop=None):
        in_r, in_w = os.pipe()
        out_r, out_w = os.pipe()
        self.pid = 4242
        self.returncode = None
        self.writes = []
        self.ready_sent = threading.Event()
        self.release_ready = threading.Event()
        if not hold_ready:
            self.release_ready.set()
        self.stdin = _RecordingWriter(os.fdopen(in_w, "w", encoding="utf-8"), self.writes, self.ready_sent)
        self.stdout = os.fdopen(out_r, "r", encoding="utf-8")
        self._worker_in = os.fdopen(in_r, "r", encoding="utf-8")
        self._worker_out = os.fdopen(out_w, "w", encoding="utf-8")
        writer = _GatedWriter(self._worker_out, self.release_ready, self.ready_sent.set)
        if loop is None:
            loop = lambda r, w: serve(r, w, backend)  # noqa: E731
        self._thread = threading.Thread(target=self._run, args=(loop, self._worker_in, writer), daemon=True)
        self._thread.start()

    def _run(self, loop, reader, writer):
        try:
            loop(reader, writer)
        except (OSError, ValueError):
            pass
        finally:
            for f in (self._worker_out, self._worker_in):
                try:
                    f.close()
                except (OSError, ValueError):
                    pass
            if self.returncode is None:
                self.returncode = 0

    def crash(self, code=1):
        self.returncode = code
        self.release_ready.set()
        try:
            self._worker_out.close()
        except (OSError, ValueError):
            pass

    def poll(self):
        return self.returncode

    def kill(self):
        self.crash(-9 if self.returncode is None else self.returncode)

    def wait(self, timeout=None):
        self._thread.join(timeout)
        return self.returncode


class BlockingBackend(FixedRatioBackend):
    """Blocks every job until ``release`` is set (or a safety timeout passes)."""

    def __init__(self, params=None):
        super().__init__(params)
        self.release = threading.Event()

    def compress(self, data, options):
        self.release.wait(10)
        return super().compress(data, options)


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        temp_dir=str(tmp_path / "managed"),
        handshake_timeout_s=5.0,
        request_timeout_s=5.0,
        backend="imgpress.core.backends:FixedRatioBackend",
        backend_params={"tool": "mock", "ratio": 0.5},
    )


@pytest.fixture
def make_coordinator(settings):
    """Factory for coordinators whose worker is a FakeWorkerProcess.

    The spawned process is reachable as ``coordinator.fake_proc`` after start.
    """
    created = []

    def _make(backend=None, hold_ready=False, loop=None):
        backend = backend or FixedRatioBackend({"tool": "mock", "ratio": 0.5})
        coord = None

        def spawn():
            proc = FakeWorkerProcess(backend, hold_ready=hold_ready, loop=loop)
            coord.fake_proc = proc
            return proc

        coord = Coordinator(settings, spawn=spawn)
        coord.fake_proc = None
        created.append(coord)
        return coord

    yield _make
    for c in created:
        c.shutdown(timeout=2.0)
