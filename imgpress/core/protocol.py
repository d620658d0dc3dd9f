"""Worker protocol: JSON line envelopes exchanged over the worker's stdio.

Envelopes (one JSON object per line):
    {"type": "ready"}
    {"type": "request", "correlation_id": "...", "payload": {"image": <b64>, "filename": ..., "options": {...}}}
    {"type": "success", "correlation_id": "...", "payload": {"best_tool": ..., "data": <b64>, "results": [...], "total_duration_ms": ...}}
    {"type": "error", "correlation_id": "...", "error": "message"}

The type set is closed; anything else is a SerializationError.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigError, SerializationError
from .models import (
    CompressionOptions,
    CompressionOutcome,
    CompressionRequest,
    CompressionResponse,
    ToolResult,
)

READY = "ready"
REQUEST = "request"
SUCCESS = "success"
ERROR = "error"

ENVELOPE_TYPES = frozenset({READY, REQUEST, SUCCESS, ERROR})


@dataclass(frozen=True)
class Envelope:
    type: str
    correlation_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ready(cls) -> "Envelope":
        return cls(type=READY)

    @classmethod
    def failure(cls, correlation_id: Optional[str], message: str) -> "Envelope":
        return cls(type=ERROR, correlation_id=correlation_id, error=message)


def encode_envelope(env: Envelope) -> str:
    if env.type not in ENVELOPE_TYPES:
        raise SerializationError(f"Unknown envelope type {env.type!r}", env.correlation_id)
    msg: Dict[str, Any] = {"type": env.type}
    if env.type != READY:
        msg["correlation_id"] = env.correlation_id
    if env.type == ERROR:
        msg["error"] = env.error or "unknown error"
    elif env.payload:
        msg["payload"] = env.payload
    try:
        return json.dumps(msg, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Envelope not serializable: {e}", env.correlation_id) from e


def decode_envelope(line: str) -> Envelope:
    try:
        msg = json.loads(line)
    except json.JSONDecodeError as e:
        raise SerializationError(f"Invalid JSON frame: {e}") from e
    if not isinstance(msg, dict):
        raise SerializationError("Frame is not a JSON object")
    cid = msg.get("correlation_id")
    if cid is not None and not isinstance(cid, str):
        raise SerializationError("correlation_id must be a string")
    etype = msg.get("type")
    if etype not in ENVELOPE_TYPES:
        raise SerializationError(f"Unknown envelope type {etype!r}", cid)
    if etype == READY:
        return Envelope.ready()
    if not cid:
        raise SerializationError(f"{etype} envelope without correlation_id")
    if etype == ERROR:
        return Envelope(type=ERROR, correlation_id=cid, error=str(msg.get("error") or "unknown error"))
    payload = msg.get("payload")
    if not isinstance(payload, dict):
        raise SerializationError(f"{etype} envelope without payload object", cid)
    return Envelope(type=etype, correlation_id=cid, payload=payload)


# ---- payload codecs ---------------------------------------------------------

def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: Any, what: str, cid: Optional[str]) -> bytes:
    if not isinstance(value, str):
        raise SerializationError(f"{what} must be a base64 string", cid)
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise SerializationError(f"{what} is not valid base64: {e}", cid) from e


def request_envelope(req: CompressionRequest) -> Envelope:
    return Envelope(
        type=REQUEST,
        correlation_id=req.correlation_id,
        payload={
            "image": _b64encode(req.image),
            "filename": req.filename,
            "options": req.options.to_dict(),
        },
    )


def parse_request(env: Envelope) -> CompressionRequest:
    cid = env.correlation_id
    p = env.payload
    filename = p.get("filename")
    if not isinstance(filename, str):
        raise SerializationError("filename must be a string", cid)
    options = p.get("options") or {}
    if not isinstance(options, dict):
        raise SerializationError("options must be an object", cid)
    try:
        opts = CompressionOptions.from_dict(options)
    except (ConfigError, TypeError, ValueError) as e:
        raise SerializationError(f"Invalid options: {e}", cid) from e
    return CompressionRequest(
        correlation_id=cid or "",
        image=_b64decode(p.get("image"), "image", cid),
        filename=filename,
        options=opts,
    )


def success_envelope(correlation_id: str, outcome: CompressionOutcome) -> Envelope:
    return Envelope(
        type=SUCCESS,
        correlation_id=correlation_id,
        payload={
            "best_tool": outcome.best_tool,
            "data": _b64encode(outcome.data),
            "results": [r.__dict__ for r in outcome.results],
            "total_duration_ms": outcome.total_duration_ms,
        },
    )


def parse_response(env: Envelope) -> CompressionResponse:
    cid = env.correlation_id or ""
    if env.type == ERROR:
        return CompressionResponse(correlation_id=cid, status=ERROR, error=env.error)
    if env.type != SUCCESS:
        raise SerializationError(f"Unexpected {env.type} envelope from worker", cid)
    p = env.payload
    best_tool = p.get("best_tool")
    if not isinstance(best_tool, str):
        raise SerializationError("best_tool must be a string", cid)
    raw_results = p.get("results") or []
    if not isinstance(raw_results, list):
        raise SerializationError("results must be a list", cid)
    results: List[ToolResult] = []
    try:
        for r in raw_results:
            results.append(ToolResult(**r))
        total = float(p.get("total_duration_ms") or 0.0)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Invalid result entry: {e}", cid) from e
    return CompressionResponse(
        correlation_id=cid,
        status=SUCCESS,
        best_tool=best_tool,
        data=_b64decode(p.get("data"), "data", cid),
        results=results,
        total_duration_ms=total,
    )


__all__ = [
    "READY",
    "REQUEST",
    "SUCCESS",
    "ERROR",
    "ENVELOPE_TYPES",
    "Envelope",
    "encode_envelope",
    "decode_envelope",
    "request_envelope",
    "parse_request",
    "success_envelope",
    "parse_response",
]
