"""Core framework components for imgpress.

Modules:
  config: Settings loading (YAML file, IMGPRESS_* env vars, overrides).
  protocol: JSON line envelopes exchanged with the worker.
  channel: Line-framed transport over the worker's stdio pipes.
  worker_entry: Subprocess entrypoint that runs a compression backend.
  backends: Compression backends (Pillow multi-tool, fixed-ratio).
  coordinator: Worker lifecycle and request/response correlation.
  file_registry: Opaque token -> stored artifact mapping.
  resource_gate: Token-addressed file access confined to the temp dir.
  progress: Explicit subscriber registry for progress events.
  service: Wires the above into compress-and-register operations.
"""

from .coordinator import Coordinator  # noqa: F401
from .file_registry import FileRegistry  # noqa: F401
from .resource_gate import ResourceGate  # noqa: F401
from .service import CompressionService, build_service  # noqa: F401
