"""CLI entrypoint for imgpress."""
from __future__ import annotations
import argparse
import json
import pathlib
import sys

from .core.config import load_settings
from .core.errors import CompressorError
from .core.logging import configure_file_logging
from .core.models import CompressionOptions


def _add_common(p):
    p.add_argument("--config", help="Path to settings file (YAML)")
    p.add_argument("--temp-dir", help="Managed directory for compressed artifacts")
    p.add_argument("--backend", help="Compression backend entry reference 'module:Class'")
    p.add_argument(
        "--log-dir",
        help="Directory to write log file (imgpress.log). If not set, only stderr is used.",
    )


def build_parser():
    p = argparse.ArgumentParser(prog="imgpress", description="imgpress image compression service")
    sub = p.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Start HTTP server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    _add_common(serve)

    comp = sub.add_parser("compress", help="Compress local files and print stats as JSON")
    comp.add_argument("files", nargs="+", help="Image files to compress")
    comp.add_argument("--quality", type=float, default=None, help="Quality in (0, 1] (default 0.6)")
    comp.add_argument("--max-width", type=int, default=None)
    comp.add_argument("--max-height", type=int, default=None)
    comp.add_argument("--preserve-exif", action="store_true")
    comp.add_argument("--out-dir", help="Copy the best result for each file here")
    _add_common(comp)
    return p


def _settings_from(args):
    return load_settings(args.config, temp_dir=args.temp_dir, backend=args.backend)


def _setup_log_dir(args):
    # core loggers already exist by now; attach the file handler to them too
    if getattr(args, "log_dir", None):
        configure_file_logging(args.log_dir)


def run_compress(args) -> int:
    from .core.service import build_service

    settings = _settings_from(args)
    options = CompressionOptions(
        quality=args.quality if args.quality is not None else CompressionOptions().quality,
        max_width=args.max_width,
        max_height=args.max_height,
        preserve_exif=args.preserve_exif,
    )
    out_dir = pathlib.Path(args.out_dir) if args.out_dir else None
    if out_dir:
        out_dir.mkdir(parents=True, exist_ok=True)
    failures = 0
    with build_service(settings) as svc:
        for f in args.files:
            try:
                stats = svc.compress_path(f, options)
            except CompressorError as e:
                failures += 1
                print(json.dumps({"file": f, "error": str(e)}))
                continue
            record = stats.to_dict()
            if out_dir:
                resp, data = svc.gate.read_bytes(stats.token)
                if data is not None:
                    target = out_dir / pathlib.Path(f).name
                    target.write_bytes(data)
                    record["output"] = str(target)
            print(json.dumps(record))
    return 1 if failures else 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in ("serve", "compress"):
        parser.print_help()
        return 1
    _setup_log_dir(args)
    try:
        if args.command == "compress":
            return run_compress(args)
        import uvicorn
        from .server import create_app

        app = create_app(settings=_settings_from(args))
        uvicorn.run(app, host=args.host, port=args.port)
        return 0
    except CompressorError as e:
        print(f"imgpress: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
