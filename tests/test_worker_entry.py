import io
import json

from imgpress.core.backends import FixedRatioBackend
from imgpress.core.models import CompressionOptions, CompressionRequest
from imgpress.core.protocol import encode_envelope, request_envelope
from imgpress.core.worker_entry import build_parser, serve


def _request_line(cid, data=b"w" * 10, filename="w.png"):
    req = CompressionRequest(correlation_id=cid, image=data, filename=filename, options=CompressionOptions())
    return encode_envelope(request_envelope(req))


def _run(lines):
    reader = io.StringIO("".join(line + "\n" for line in lines))
    writer = io.StringIO()
    backend = FixedRatioBackend({"tool": "mock", "ratio": 0.5})
    backend.prepare()
    handled = serve(reader, writer, backend)
    return handled, [json.loads(line) for line in writer.getvalue().splitlines()]


def test_ready_is_first_then_one_answer_per_request():
    handled, out = _run([_request_line("c1"), _request_line("c2")])
    assert handled == 2
    assert out[0] == {"type": "ready"}
    assert [(m["type"], m["correlation_id"]) for m in out[1:]] == [("success", "c1"), ("success", "c2")]
    assert out[1]["payload"]["best_tool"] == "mock"


def test_worker_survives_bad_frames():
    bad_b64 = json.dumps(
        {"type": "request", "correlation_id": "c3", "payload": {"image": "@@@", "filename": "x.png"}}
    )
    lines = [
        "some library banner",
        "{not json",
        json.dumps({"type": "success", "correlation_id": "c2", "payload": {}}),
        bad_b64,
        _request_line("c4"),
    ]
    handled, out = _run(lines)
    assert out[0]["type"] == "ready"
    replies = out[1:]
    assert [m["type"] for m in replies] == ["error", "error", "error", "success"]
    assert replies[0]["correlation_id"] is None
    assert replies[1]["correlation_id"] == "c2"
    assert replies[2]["correlation_id"] == "c3"
    assert replies[3]["correlation_id"] == "c4"
    assert handled == 2


def test_backend_failure_becomes_error_envelope():
    class Exploding(FixedRatioBackend):
        def compress(self, data, options):
            raise RuntimeError("codec crashed")

    reader = io.StringIO(_request_line("c5") + "\n")
    writer = io.StringIO()
    serve(reader, writer, Exploding({}))
    out = [json.loads(line) for line in writer.getvalue().splitlines()]
    assert out[1]["type"] == "error"
    assert out[1]["correlation_id"] == "c5"
    assert "codec crashed" in out[1]["error"]


def test_parser_requires_backend():
    args = build_parser().parse_args(["--backend", "imgpress.core.backends:FixedRatioBackend"])
    assert args.params == "{}"
