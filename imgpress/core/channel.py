"""Line-framed message channel over a pair of text streams (worker stdio)."""
from __future__ import annotations

import threading
from typing import Optional, TextIO

from .errors import ChannelClosedError
from .logging import core_logger
from .protocol import Envelope, decode_envelope, encode_envelope


class MessageChannel:
    """Bidirectional envelope transport.

    ``receive`` is meant to be driven by a single reader thread; ``send`` may be
    called from any thread.
    """

    def __init__(self, reader: TextIO, writer: TextIO, name: str = "channel"):
        self._reader = reader
        self._writer = writer
        self._name = name
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, env: Envelope):
        line = encode_envelope(env) + "\n"
        with self._write_lock:
            if self._closed:
                raise ChannelClosedError(f"{self._name} is closed")
            try:
                self._writer.write(line)
                self._writer.flush()
            except (OSError, ValueError) as e:
                # BrokenPipeError or write on a file closed underneath us
                self._closed = True
                raise ChannelClosedError(f"{self._name} write failed: {e}") from e
            if self._closed:
                # close() gave up waiting while this write was stuck
                self._close_stream()

    def receive(self) -> Optional[Envelope]:
        """Block for the next envelope; None on EOF.

        Raises SerializationError for a malformed frame; the channel stays usable.
        """
        while True:
            try:
                line = self._reader.readline()
            except (OSError, ValueError):
                return None
            if not line:
                return None
            line = line.strip()
            if not line:
                continue
            if not line.startswith("{"):
                # Skip stray stdout (library banners etc.)
                core_logger.debug(f"[{self._name}] skipping non-protocol line: {line[:120]}")
                continue
            return decode_envelope(line)

    def close(self, timeout: Optional[float] = None) -> bool:
        """Close the write side.

        Returns False when a send blocked on a full pipe still held the write
        lock after ``timeout``; the channel is marked closed anyway and that
        send closes the stream once it returns.
        """
        if not self._write_lock.acquire(timeout=-1 if timeout is None else timeout):
            self._closed = True
            core_logger.warning(f"[{self._name}] close: a send is still blocked, deferring stream close")
            return False
        try:
            self._closed = True
            self._close_stream()
        finally:
            self._write_lock.release()
        return True

    def _close_stream(self):
        try:
            self._writer.close()
        except (OSError, ValueError):
            pass


__all__ = ["MessageChannel"]
