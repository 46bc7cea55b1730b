#!/usr/bin/env python3
"""NAS Dedup Server (FastAPI).

Local HTTP surface over the dedup engine.
- REST endpoints for scan, duplicate analysis, stats and deletion
- WebSocket scan progress fed from the job coordinator
- Byte-range file streaming for previews, confined to the storage root

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import mimetypes
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Iterator

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from nas_dedup.dedup_engine import (
    ACTIVE_STATUSES,
    APP_NAME,
    DEFAULT_DB,
    DEFAULT_LOG_FILE,
    Engine,
    env_flag,
    human_bytes,
    is_subpath,
    now_utc_iso,
)

STREAM_CHUNK_SIZE = 256 * 1024

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger("nas_dedup_server")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = configure_logging(Path(tempfile.gettempdir()) / APP_NAME / "server.log")


# ------------------------------ Request Models ------------------------------ #


class ScanRequest(BaseModel):
    wait: bool = False
    subpath: str = ""


class DeleteRequest(BaseModel):
    ids: list[int] = Field(min_length=1, max_length=5000)


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(
    code: str,
    message: str,
    status_code: int = 400,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code, headers=headers)


RESULT_STATUS_CODES = {
    "SCAN_IN_PROGRESS": 409,
    "SCAN_CANCELLED": 409,
    "NO_ACTIVE_SCAN": 409,
    "RECORD_NOT_FOUND": 404,
    "DELETE_FAILED": 409,
    "SCAN_FAILED": 500,
}


def result_response(result: dict[str, Any]) -> JSONResponse:
    """Map an engine result dict onto the response envelope."""
    if result.get("success", True):
        return api_ok(result)
    code = result.get("code", "OPERATION_FAILED")
    return api_error(
        code,
        result.get("error") or "Operation failed",
        status_code=RESULT_STATUS_CODES.get(code, 400),
        details={k: v for k, v in result.items() if k not in {"code", "error", "success"}},
    )


# ----------------------------- Progress Hub --------------------------------- #


class ProgressHub:
    """Fans coordinator progress snapshots out to WebSocket subscribers.

    The coordinator calls publish() from its worker thread; each subscriber
    queue belongs to an event loop, so delivery goes through
    call_soon_threadsafe on that loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            self._subs[q] = asyncio.get_running_loop()
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        with self._lock:
            self._subs.pop(q, None)

    def publish(self, snapshot: dict[str, Any]) -> None:
        payload = {"event": "progress", "progress": snapshot}
        with self._lock:
            subs = list(self._subs.items())

        for q, loop in subs:
            if loop.is_closed():
                continue
            try:
                loop.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
            except RuntimeError:
                continue


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(Exception):
            _ = q.get_nowait()
        with contextlib.suppress(Exception):
            q.put_nowait(payload)


# ----------------------------- Range Streaming ------------------------------ #


def parse_byte_range(header: str, size: int) -> tuple[int, int] | None:
    """Parse a single ``bytes=`` range into inclusive (start, end).

    Returns None when the header is malformed, multi-range or unsatisfiable.
    """
    m = _RANGE_RE.match(header.strip())
    if not m or size <= 0:
        return None
    first, last = m.group(1), m.group(2)

    if not first and not last:
        return None
    if not first:
        suffix = int(last)
        if suffix == 0:
            return None
        return max(size - suffix, 0), size - 1

    start = int(first)
    if start >= size:
        return None
    if not last:
        return start, size - 1
    end = int(last)
    if end < start:
        return None
    return start, min(end, size - 1)


def iter_file_range(path: str, start: int, end: int, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    remaining = end - start + 1
    with open(path, "rb") as f:
        f.seek(start)
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def resolve_root_file(root: str, raw_path: str) -> str:
    """Absolute or root-relative path -> real path (caller checks confinement)."""
    candidate = raw_path if os.path.isabs(raw_path) else os.path.join(root, raw_path.lstrip("/\\"))
    return os.path.realpath(candidate)


# -------------------------------- Routes ------------------------------------ #

router = APIRouter()


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


@router.get("/healthz", summary="Liveness probe")
def healthz(request: Request):
    engine = get_engine(request)
    return api_ok({"service": APP_NAME, "root": engine.root, "db_path": str(engine.db_path)})


@router.post("/api/v1/scan", summary="Start a scan (walk + lazy hash)")
def start_scan(req: ScanRequest, request: Request):
    engine = get_engine(request)
    LOGGER.info("scan_requested wait=%s subpath=%s", req.wait, req.subpath or "/")
    return result_response(engine.trigger_scan(wait=req.wait, subpath=req.subpath))


@router.post("/api/v1/scan/cancel", summary="Cancel the active scan")
def cancel_scan(request: Request):
    return result_response(get_engine(request).cancel_scan())


@router.get("/api/v1/scan/progress", summary="Current job progress")
def scan_progress(request: Request):
    return api_ok(get_engine(request).get_scan_progress())


@router.websocket("/api/v1/ws/scan")
async def ws_scan_progress(websocket: WebSocket):
    await websocket.accept()
    engine: Engine = websocket.app.state.engine
    hub: ProgressHub = websocket.app.state.progress_hub

    q = hub.subscribe()
    try:
        snapshot = engine.get_scan_progress()
        await websocket.send_json({"event": "snapshot", "progress": snapshot})

        if snapshot["status"] in ACTIVE_STATUSES:
            while True:
                payload = await q.get()
                await websocket.send_json(payload)
                if payload["progress"]["status"] not in ACTIVE_STATUSES:
                    break
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(q)
        with contextlib.suppress(Exception):
            await websocket.close()


@router.post("/api/v1/duplicates/analyze", summary="Hash unhashed size collisions")
def analyze_duplicates(request: Request):
    return result_response(get_engine(request).analyze_duplicates())


@router.get("/api/v1/duplicates", summary="Duplicate groups, biggest reclaim first")
def list_duplicates(request: Request, limit: int | None = Query(default=None, ge=1, le=10000)):
    groups = get_engine(request).get_duplicate_groups(limit=limit)
    for g in groups:
        g["size_human"] = human_bytes(g["size"])
        g["wasted_space_human"] = human_bytes(g["wasted_space"])
    wasted = sum(g["wasted_space"] for g in groups)
    return api_ok(groups, meta={"group_count": len(groups), "wasted_space": wasted})


@router.get("/api/v1/stats", summary="Inventory totals")
def scan_stats(request: Request):
    stats = get_engine(request).get_scan_stats()
    stats["total_size_human"] = human_bytes(stats["total_size"])
    stats["wasted_space_human"] = human_bytes(stats["wasted_space"])
    return api_ok(stats)


@router.delete("/api/v1/files/{record_id}", summary="Delete one file and its record")
def delete_file(record_id: int, request: Request):
    return result_response(get_engine(request).delete_file(record_id))


@router.post("/api/v1/files/delete", summary="Delete several files by id")
def delete_files(req: DeleteRequest, request: Request):
    result = get_engine(request).delete_files(req.ids)
    return api_ok(result, warnings=result["errors"])


@router.get("/api/v1/file", summary="Stream a file under the root (Range aware)")
def stream_file(request: Request, path: str | None = Query(default=None)):
    engine = get_engine(request)
    if not path:
        return api_error("MISSING_PATH", "Query parameter 'path' is required", status_code=400)

    full_path = resolve_root_file(engine.root, path)
    if not is_subpath(full_path, engine.root):
        LOGGER.warning("stream_denied path=%s", path)
        return api_error("ACCESS_DENIED", "Path is outside the storage root", status_code=403)
    if not os.path.isfile(full_path):
        return api_error("FILE_NOT_FOUND", f"File not found: {path}", status_code=404)

    size = os.path.getsize(full_path)
    media_type = mimetypes.guess_type(full_path)[0] or "application/octet-stream"
    range_header = request.headers.get("range")

    if range_header is None:
        return StreamingResponse(
            iter_file_range(full_path, 0, size - 1),
            media_type=media_type,
            headers={"Content-Length": str(size), "Accept-Ranges": "bytes"},
        )

    byte_range = parse_byte_range(range_header, size)
    if byte_range is None:
        return api_error(
            "RANGE_NOT_SATISFIABLE",
            f"Unsatisfiable range: {range_header}",
            status_code=416,
            details={"size": size},
            headers={"Content-Range": f"bytes */{size}"},
        )

    start, end = byte_range
    return StreamingResponse(
        iter_file_range(full_path, start, end),
        status_code=206,
        media_type=media_type,
        headers={
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        },
    )


# ------------------------------ App Factory --------------------------------- #


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(
        title="NAS Dedup Server",
        version="1.0.0",
        description="Incremental duplicate detection and cleanup API for a storage root.",
    )
    app.state.engine = engine
    app.state.progress_hub = ProgressHub()
    engine.coordinator.add_listener(app.state.progress_hub.publish)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):
        LOGGER.exception("Unhandled server error: %s", exc)
        return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)

    app.include_router(router)
    return app


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in /tmp."""
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        probe = preferred.parent / ".write_probe"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback


def build_app() -> FastAPI:
    """uvicorn factory: configuration comes from NAS_DEDUP_* environment variables."""
    engine = Engine(
        db_path=resolve_writable_path(Path(os.getenv("NAS_DEDUP_DB", str(DEFAULT_DB))), "inventory.db"),
        root=os.getenv("NAS_DEDUP_ROOT", str(Path.cwd())),
        log_file=resolve_writable_path(Path(os.getenv("NAS_DEDUP_LOG", str(DEFAULT_LOG_FILE))), "actions.log"),
        rehash_changed=env_flag("NAS_DEDUP_REHASH_CHANGED"),
    )
    return create_app(engine)


def run_server(root: str, db_path: Path, log_file: Path, host: str, port: int) -> int:
    import uvicorn

    engine = Engine(
        db_path=resolve_writable_path(db_path, "inventory.db"),
        root=root,
        log_file=resolve_writable_path(log_file, "actions.log"),
        rehash_changed=env_flag("NAS_DEDUP_REHASH_CHANGED"),
    )
    LOGGER.info("Starting NAS Dedup Server host=%s port=%s root=%s", host, port, engine.root)
    try:
        uvicorn.run(create_app(engine), host=host, port=port, log_level="info")
    finally:
        engine.close()
    return 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run NAS Dedup Server")
    parser.add_argument("--root", default=os.getenv("NAS_DEDUP_ROOT", str(Path.cwd())))
    parser.add_argument("--db", default=os.getenv("NAS_DEDUP_DB", str(DEFAULT_DB)))
    parser.add_argument("--log-file", default=os.getenv("NAS_DEDUP_LOG", str(DEFAULT_LOG_FILE)))
    parser.add_argument("--host", default=os.getenv("NAS_DEDUP_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("NAS_DEDUP_PORT", "8002")))
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    raise SystemExit(
        run_server(
            root=args.root,
            db_path=Path(args.db),
            log_file=Path(args.log_file),
            host=args.host,
            port=args.port,
        )
    )


if __name__ == "__main__":
    main()
