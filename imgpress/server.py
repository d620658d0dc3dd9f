"""HTTP server (FastAPI) wrapping CompressionService + ResourceGate.

Endpoints:
  GET    /health                 coordinator snapshot + artifact count
  POST   /compress?filename=...  raw image bytes in the body
  GET    /file?id=<token>        token-addressed retrieval (confined to temp dir)
  GET    /artifacts              metadata of stored artifacts (no paths)
  DELETE /artifacts/{token}      evict one artifact
  POST   /admin/sweep            evict artifacts older than max_age_hours

CLI will import this module and call create_app().
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from .core.config import Settings, load_settings
from .core.errors import (
    CompressionFailedError,
    ConfigError,
    CoordinatorStateError,
    RequestTimeoutError,
    SerializationError,
    ShutdownError,
    WorkerCrashError,
)
from .core.logging import core_logger
from .core.models import CompressionOptions
from .core.service import CompressionService, build_service


class ToolResultModel(BaseModel):
    tool: str
    original_size: int
    compressed_size: int
    compression_ratio: float
    duration_ms: float


class CompressResponse(BaseModel):
    token: str
    filename: str
    best_tool: str
    original_size: int
    compressed_size: int
    compression_ratio: float
    total_duration_ms: float
    results: List[ToolResultModel] = []


class ArtifactInfo(BaseModel):
    token: str
    filename: str
    tool: str
    created_at: float
    original_size: int
    compressed_size: int
    compression_ratio: float


def _status_for(exc: Exception) -> int:
    if isinstance(exc, RequestTimeoutError):
        return 504
    if isinstance(exc, (WorkerCrashError, CoordinatorStateError, ShutdownError)):
        return 503
    if isinstance(exc, (CompressionFailedError, SerializationError)):
        return 422
    return 500


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[CompressionService] = None,
    manage_service: Optional[bool] = None,
    enable_maintenance: bool = True,
):
    """Build the app.

    When ``service`` is given it is used as-is (caller owns start/close unless
    ``manage_service`` is True); otherwise one is built from ``settings`` and
    started/stopped with the app lifespan.
    """
    settings = settings or (service.settings if service else load_settings())
    svc = service or build_service(settings)
    manage = (service is None) if manage_service is None else manage_service

    async def _maintenance_loop():  # pragma: no cover (timing loop)
        while True:
            await asyncio.sleep(settings.sweep_interval_s)
            try:
                await run_in_threadpool(svc.sweep)
            except Exception as e:  # noqa: BLE001
                core_logger.exception(f"maintenance loop error: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage:
            await run_in_threadpool(svc.start)
        task = asyncio.get_event_loop().create_task(_maintenance_loop()) if enable_maintenance else None
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
            if manage:
                await run_in_threadpool(svc.close)

    app = FastAPI(title="imgpress", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health():
        snap = svc.coordinator.snapshot()
        return {"status": "ok" if snap["state"] == "ready" else "degraded", "worker": snap, "artifacts": len(svc.registry)}

    @app.post("/compress", response_model=CompressResponse)
    async def compress(
        request: Request,
        filename: str = Query(...),
        quality: Optional[float] = Query(None),
        max_width: Optional[int] = Query(None),
        max_height: Optional[int] = Query(None),
        preserve_exif: bool = Query(False),
    ):
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="Empty body")
        try:
            options = CompressionOptions(
                quality=quality if quality is not None else CompressionOptions().quality,
                max_width=max_width,
                max_height=max_height,
                preserve_exif=preserve_exif,
            )
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        try:
            stats = await run_in_threadpool(svc.compress, data, filename, options)
        except Exception as e:  # noqa: BLE001
            status = _status_for(e)
            if status == 500:
                core_logger.exception(f"compress failed: {e}")
            raise HTTPException(status_code=status, detail=str(e))
        return stats.to_dict()

    @app.get("/file")
    def get_file(id: Optional[str] = Query(None)):  # noqa: A002 - wire name
        resp = svc.gate.resolve(id)
        if not resp.ok:
            return JSONResponse(status_code=resp.status, content={"detail": resp.detail})
        return FileResponse(str(resp.path), media_type=resp.content_type)

    @app.get("/artifacts", response_model=List[ArtifactInfo])
    def list_artifacts():
        out: List[Dict[str, Any]] = []
        for a in svc.registry.list():
            out.append({
                "token": a.token,
                "filename": a.filename,
                "tool": a.tool,
                "created_at": a.created_at,
                "original_size": a.original_size,
                "compressed_size": a.compressed_size,
                "compression_ratio": a.compression_ratio,
            })
        return out

    @app.delete("/artifacts/{token}")
    def evict_artifact(token: str):
        if not svc.evict(token):
            raise HTTPException(status_code=404, detail="Artifact not found")
        return {"token": token, "status": "evicted"}

    @app.post("/admin/sweep")
    def admin_sweep(max_age_hours: Optional[float] = Query(None, ge=0)):
        removed = svc.sweep(max_age_hours)
        return {"removed": removed, "remaining": len(svc.registry)}

    app.state.service = svc
    app.state.settings = settings
    return app


__all__ = ["create_app"]
