"""Subprocess worker entrypoint (JSON line protocol over stdio).

    python -m imgpress.core.worker_entry --backend module:Class [--params JSON]

On start the worker loads its backend and emits {"type": "ready"}. Each
"request" envelope is answered with exactly one "success" or "error" envelope
carrying the same correlation_id. Jobs are processed serially. EOF on stdin
ends the loop.
"""
from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Callable, Dict, TextIO

from .backends import CompressionBackend, load_backend
from .channel import MessageChannel
from .errors import ChannelClosedError, CompressorError, SerializationError
from .logging import get_logger
from .protocol import REQUEST, Envelope, parse_request, success_envelope

logger = get_logger("imgpress.worker")


def handle_request(env: Envelope, backend: CompressionBackend) -> Envelope:
    cid = env.correlation_id
    try:
        req = parse_request(env)
    except SerializationError as e:
        return Envelope.failure(cid, str(e))
    logger.info(f"compress start cid={cid} file={req.filename} bytes={len(req.image)}")
    start = time.perf_counter()
    try:
        outcome = backend.compress(req.image, req.options)
    except Exception as e:  # noqa: BLE001 - backend is a black box; report, keep serving
        logger.error(f"compress failed cid={cid} file={req.filename}: {e}")
        return Envelope.failure(cid, f"Compression failed: {e}")
    logger.info(
        f"compress done cid={cid} best={outcome.best_tool} "
        f"{len(req.image)}->{len(outcome.data)} bytes in {(time.perf_counter() - start) * 1000:.1f}ms"
    )
    return success_envelope(cid, outcome)


HANDLERS: Dict[str, Callable[[Envelope, CompressionBackend], Envelope]] = {REQUEST: handle_request}


def serve(reader: TextIO, writer: TextIO, backend: CompressionBackend) -> int:
    """Run the worker loop until EOF; returns the number of requests handled."""
    channel = MessageChannel(reader, writer, name="worker")
    handled = 0
    try:
        channel.send(Envelope.ready())
        while True:
            try:
                env = channel.receive()
            except SerializationError as e:
                logger.warning(f"malformed frame: {e}")
                channel.send(Envelope.failure(e.correlation_id, str(e)))
                continue
            if env is None:
                break
            handler = HANDLERS.get(env.type)
            if handler is None:
                channel.send(Envelope.failure(env.correlation_id, f"Unexpected envelope type {env.type!r}"))
                continue
            channel.send(handler(env, backend))
            handled += 1
    except ChannelClosedError as e:
        logger.info(f"channel closed: {e}")
    return handled


def build_parser():
    p = argparse.ArgumentParser(prog="imgpress-worker", description="imgpress compression worker")
    p.add_argument("--backend", required=True, help="Backend entry reference 'module:Class'")
    p.add_argument("--params", default="{}", help="JSON object passed to the backend")
    return p


def main(argv=None):  # pragma: no cover - exercised via subprocess tests
    args = build_parser().parse_args(argv)
    # Only protocol frames may reach the real stdout.
    protocol_out = sys.stdout
    sys.stdout = sys.stderr
    try:
        params = json.loads(args.params)
        backend = load_backend(args.backend, params)
    except (json.JSONDecodeError, CompressorError) as e:
        logger.error(f"worker init failed: {e}")
        return 2
    serve(sys.stdin, protocol_out, backend)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
