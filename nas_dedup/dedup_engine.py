#!/usr/bin/env python3
"""NAS Dedup Engine

Incremental duplicate detection for a single storage root:
- SQLite-backed file inventory keyed by root-relative path
- Iterative directory walk with batched upserts
- Lazy hashing (size -> content digest, only for size collisions)
- Duplicate groups and wasted-space statistics
- Safe deletion (file first, then record) with per-item batch results
- Single-flight scan/hash job coordinator with observable progress

The engine assumes one process owns the inventory database.
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import datetime as dt
import json
import logging
import os
import sqlite3
import sys
import tempfile
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

import xxhash

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "nas_dedup"
DEFAULT_DB = Path.home() / ".local" / "share" / APP_NAME / "inventory.db"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "actions.log"

SCAN_BATCH_SIZE = 500
HASH_CHUNK_SIZE = 1024 * 1024
SQLITE_BUSY_TIMEOUT = 30.0
PROGRESS_NOTIFY_EVERY = 100

# Dot-names are skipped separately (ScanConfig.skip_hidden).
DEFAULT_SKIP_NAMES = {
    "$RECYCLE.BIN",
    "System Volume Information",
    "#recycle",
    "@eaDir",
    "lost+found",
    "node_modules",
    "__pycache__",
}

STATUS_IDLE = "idle"
STATUS_SCANNING = "scanning"
STATUS_HASHING = "hashing"
STATUS_DONE = "done"
STATUS_ERROR = "error"
ACTIVE_STATUSES = frozenset({STATUS_SCANNING, STATUS_HASHING})


# ------------------------------- Utilities ---------------------------------- #


def now_utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def is_subpath(path: str, root: str) -> bool:
    p = os.path.realpath(path)
    r = os.path.realpath(root)
    return p == r or p.startswith(r.rstrip(os.sep) + os.sep)


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def normalize_rel_path(path: str) -> str:
    """Root-relative form used as the inventory key: '/'-separated, no leading slash."""
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    return "/".join(parts)


def setup_logger(log_file: Path) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


# ------------------------------- Exceptions --------------------------------- #


class RecordNotFoundError(LookupError):
    """No inventory record exists for the requested id."""


class ScanInProgressError(RuntimeError):
    """A scan/hash job is already active."""


class JobCancelledError(Exception):
    """Raised inside a job when its cancellation token is set."""


# ------------------------------ Data Models --------------------------------- #


@dataclasses.dataclass(slots=True)
class ScanConfig:
    root: str
    skip_names: set[str] = dataclasses.field(default_factory=lambda: set(DEFAULT_SKIP_NAMES))
    skip_hidden: bool = True
    follow_symlinks: bool = False
    rehash_changed: bool = False


@dataclasses.dataclass(slots=True)
class FileRecord:
    id: int
    path: str
    name: str
    size: int
    mtime: float
    hash: str | None
    scanned_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FileRecord:
        return cls(
            id=int(row["id"]),
            path=str(row["path"]),
            name=str(row["name"]),
            size=int(row["size"]),
            mtime=float(row["mtime"]),
            hash=row["hash"],
            scanned_at=str(row["scanned_at"]),
        )


@dataclasses.dataclass(slots=True)
class DuplicateGroup:
    hash: str
    size: int
    files: list[FileRecord]

    @property
    def count(self) -> int:
        return len(self.files)

    @property
    def wasted_space(self) -> int:
        return self.size * (len(self.files) - 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "size": self.size,
            "count": self.count,
            "wasted_space": self.wasted_space,
            "files": [dataclasses.asdict(f) for f in self.files],
        }


@dataclasses.dataclass(slots=True)
class ScanProgress:
    status: str = STATUS_IDLE
    scanned_files: int = 0
    total_files: int = 0
    hash_processed: int = 0
    hash_candidates: int = 0
    current_file: str | None = None
    message: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


# ------------------------------ SQLite Store -------------------------------- #


class InventoryStore:
    """SQLite persistence for the file inventory (one row per root-relative path)."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        ensure_parent(db_path)
        self.conn = sqlite3.connect(str(db_path), timeout=SQLITE_BUSY_TIMEOUT)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA temp_store=MEMORY;")
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS files (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              path TEXT NOT NULL UNIQUE,
              name TEXT NOT NULL,
              size INTEGER NOT NULL,
              mtime REAL NOT NULL,
              hash TEXT,
              scanned_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_files_size ON files(size);
            CREATE INDEX IF NOT EXISTS idx_files_hash ON files(hash);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def commit(self) -> None:
        self.conn.commit()

    def upsert_batch(self, rows: Sequence[tuple[Any, ...]], rehash_changed: bool = False) -> None:
        """Insert or refresh (path, name, size, mtime, scanned_at) rows.

        A size change always clears the stored hash. With ``rehash_changed``
        an mtime change clears it too; otherwise a same-size edit keeps it.
        """
        keep_hash = "files.size=excluded.size"
        if rehash_changed:
            keep_hash += " AND files.mtime=excluded.mtime"
        hash_clause = f"hash=CASE WHEN {keep_hash} THEN files.hash ELSE NULL END,"
        self.conn.executemany(
            f"""
            INSERT INTO files(path, name, size, mtime, hash, scanned_at)
            VALUES (?, ?, ?, ?, NULL, ?)
            ON CONFLICT(path) DO UPDATE SET
              {hash_clause}
              name=excluded.name,
              size=excluded.size,
              mtime=excluded.mtime,
              scanned_at=excluded.scanned_at
            """,
            rows,
        )

    def get(self, record_id: int) -> FileRecord | None:
        row = self.conn.execute("SELECT * FROM files WHERE id=?", (record_id,)).fetchone()
        return FileRecord.from_row(row) if row else None

    def get_by_path(self, path: str) -> FileRecord | None:
        row = self.conn.execute("SELECT * FROM files WHERE path=?", (normalize_rel_path(path),)).fetchone()
        return FileRecord.from_row(row) if row else None

    def delete(self, record_id: int) -> bool:
        cur = self.conn.execute("DELETE FROM files WHERE id=?", (record_id,))
        return cur.rowcount > 0

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM files").fetchone()[0])

    def iter_records(self) -> Iterator[FileRecord]:
        for row in self.conn.execute("SELECT * FROM files ORDER BY path").fetchall():
            yield FileRecord.from_row(row)

    def candidate_sizes(self) -> list[int]:
        rows = self.conn.execute(
            """
            SELECT size, COUNT(*) AS c
            FROM files
            GROUP BY size
            HAVING c > 1
            ORDER BY size DESC
            """
        ).fetchall()
        return [int(r["size"]) for r in rows]

    def unhashed_with_size(self, size: int) -> list[FileRecord]:
        rows = self.conn.execute(
            "SELECT * FROM files WHERE size=? AND hash IS NULL ORDER BY path",
            (size,),
        ).fetchall()
        return [FileRecord.from_row(r) for r in rows]

    def count_unhashed_candidates(self) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*)
            FROM files
            WHERE hash IS NULL AND size IN (
              SELECT size FROM files GROUP BY size HAVING COUNT(*) > 1
            )
            """
        ).fetchone()
        return int(row[0])

    def set_hash(self, record_id: int, digest: str) -> None:
        self.conn.execute("UPDATE files SET hash=? WHERE id=?", (digest, record_id))

    def duplicate_hashes(self, limit: int | None = None) -> list[sqlite3.Row]:
        sql = """
            SELECT hash, MAX(size) AS size, COUNT(*) AS c
            FROM files
            WHERE hash IS NOT NULL
            GROUP BY hash
            HAVING c > 1
            ORDER BY MAX(size) * COUNT(*) DESC, hash
        """
        if limit is not None:
            return self.conn.execute(sql + " LIMIT ?", (limit,)).fetchall()
        return self.conn.execute(sql).fetchall()

    def records_with_hash(self, digest: str) -> list[FileRecord]:
        rows = self.conn.execute(
            "SELECT * FROM files WHERE hash=? ORDER BY mtime DESC, path",
            (digest,),
        ).fetchall()
        return [FileRecord.from_row(r) for r in rows]

    def stats(self) -> dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
              COUNT(*) AS total_files,
              COUNT(hash) AS hashed_files,
              COALESCE(SUM(size), 0) AS total_size
            FROM files
            """
        ).fetchone()
        wasted = self.conn.execute(
            """
            SELECT COALESCE(SUM(size * (c - 1)), 0)
            FROM (
              SELECT MAX(size) AS size, COUNT(*) AS c
              FROM files
              WHERE hash IS NOT NULL
              GROUP BY hash
              HAVING c > 1
            )
            """
        ).fetchone()[0]
        return {
            "total_files": int(row["total_files"]),
            "hashed_files": int(row["hashed_files"]),
            "total_size": int(row["total_size"]),
            "wasted_space": int(wasted),
        }


@contextlib.contextmanager
def store_session(db_path: Path) -> Iterator[InventoryStore]:
    store = InventoryStore(db_path)
    try:
        yield store
    finally:
        store.close()


# -------------------------------- Walker ------------------------------------ #


class DirectoryWalker:
    """Iterative walker (explicit stack) that upserts every regular file under the root."""

    def __init__(
        self,
        store: InventoryStore,
        config: ScanConfig,
        logger: logging.Logger,
        progress_cb: Callable[[int, str], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.store = store
        self.config = config
        self.logger = logger
        self.progress_cb = progress_cb
        self.should_stop = should_stop

    def _should_skip(self, name: str) -> bool:
        if self.config.skip_hidden and name.startswith("."):
            return True
        return name in self.config.skip_names

    def _flush(self, batch: list[tuple[Any, ...]]) -> None:
        if not batch:
            return
        self.store.upsert_batch(batch, rehash_changed=self.config.rehash_changed)
        self.store.commit()
        batch.clear()

    def walk(self, subpath: str = "") -> int:
        root = os.path.realpath(os.path.expanduser(self.config.root))
        if not os.path.isdir(root):
            raise ValueError(f"Root is not a directory: {root}")

        start_rel = normalize_rel_path(subpath)
        start = os.path.join(root, *start_rel.split("/")) if start_rel else root
        if not is_subpath(start, root):
            raise ValueError(f"Subpath escapes root: {subpath}")
        if not os.path.isdir(start):
            raise ValueError(f"Subpath is not a directory: {subpath}")

        follow = self.config.follow_symlinks
        count = 0
        batch: list[tuple[Any, ...]] = []
        stack = [start_rel]

        try:
            while stack:
                rel_dir = stack.pop()
                current = os.path.join(root, *rel_dir.split("/")) if rel_dir else root
                try:
                    with os.scandir(current) as it:
                        entries = list(it)
                except OSError as exc:
                    self.logger.warning("walk_dir_failed path=%s err=%s", current, exc)
                    continue

                for entry in entries:
                    if self.should_stop and self.should_stop():
                        raise JobCancelledError("walk cancelled")

                    name = entry.name
                    if self._should_skip(name):
                        continue
                    rel = f"{rel_dir}/{name}" if rel_dir else name

                    try:
                        is_dir = entry.is_dir(follow_symlinks=follow)
                        is_file = entry.is_file(follow_symlinks=follow)
                    except OSError as exc:
                        self.logger.warning("walk_entry_failed path=%s err=%s", entry.path, exc)
                        continue

                    if is_dir:
                        stack.append(rel)
                        continue
                    if not is_file:
                        continue

                    try:
                        st = entry.stat(follow_symlinks=follow)
                    except OSError as exc:
                        self.logger.warning("walk_stat_failed path=%s err=%s", entry.path, exc)
                        continue

                    batch.append((rel, name, int(st.st_size), float(st.st_mtime), now_utc_iso()))
                    count += 1
                    if self.progress_cb:
                        self.progress_cb(count, name)
                    if len(batch) >= SCAN_BATCH_SIZE:
                        self._flush(batch)
        except JobCancelledError:
            self._flush(batch)
            raise

        self._flush(batch)
        self.logger.info("walk_complete root=%s subpath=%s files=%s", root, start_rel or "/", count)
        return count


# ------------------------------ Lazy Hasher --------------------------------- #


def hash_file(path: str, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    h = xxhash.xxh3_128()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


class LazyHasher:
    """Hashes only records whose size collides with another record's size."""

    def __init__(
        self,
        store: InventoryStore,
        root: str,
        logger: logging.Logger,
        progress_cb: Callable[[int, str], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ):
        self.store = store
        self.root = os.path.realpath(os.path.expanduser(root))
        self.logger = logger
        self.progress_cb = progress_cb
        self.should_stop = should_stop

    def pending_count(self) -> int:
        return self.store.count_unhashed_candidates()

    def run(self) -> int:
        sizes = self.store.candidate_sizes()
        self.logger.info("hash_start candidate_sizes=%s", len(sizes))

        processed = 0
        hashed = 0
        for size in sizes:
            for record in self.store.unhashed_with_size(size):
                if self.should_stop and self.should_stop():
                    self.store.commit()
                    raise JobCancelledError("hash cancelled")

                processed += 1
                if self.progress_cb:
                    self.progress_cb(processed, record.name)

                full_path = os.path.join(self.root, *record.path.split("/"))
                try:
                    # A file that changed size since the walk would poison its group.
                    current_size = os.stat(full_path).st_size
                    if current_size != record.size:
                        self.logger.warning(
                            "hash_skipped_size_changed path=%s recorded=%s current=%s",
                            record.path,
                            record.size,
                            current_size,
                        )
                        continue
                    digest = hash_file(full_path)
                except OSError as exc:
                    self.logger.warning("hash_failed path=%s err=%s", record.path, exc)
                    continue

                self.store.set_hash(record.id, digest)
                hashed += 1
            self.store.commit()

        self.logger.info("hash_complete processed=%s hashed=%s", processed, hashed)
        return hashed


# --------------------------- Duplicate Grouping ----------------------------- #


class DuplicateGrouper:
    """Read-only view of duplicate groups and aggregate inventory stats."""

    def __init__(self, store: InventoryStore):
        self.store = store

    def groups(self, limit: int | None = None) -> list[DuplicateGroup]:
        out: list[DuplicateGroup] = []
        for row in self.store.duplicate_hashes(limit=limit):
            members = self.store.records_with_hash(row["hash"])
            # Rows may vanish between the two reads when a deletion runs concurrently.
            if len(members) < 2:
                continue
            out.append(DuplicateGroup(hash=row["hash"], size=int(row["size"]), files=members))
        return out

    def stats(self) -> dict[str, int]:
        return self.store.stats()


# ------------------------------ Deletion ------------------------------------ #


class DeletionExecutor:
    """Deletes a file's bytes and then its inventory record."""

    def __init__(self, store: InventoryStore, root: str, logger: logging.Logger):
        self.store = store
        self.root = os.path.realpath(os.path.expanduser(root))
        self.logger = logger

    def _resolve(self, record: FileRecord) -> str:
        full_path = os.path.join(self.root, *record.path.split("/"))
        if not is_subpath(full_path, self.root):
            raise PermissionError(f"Path escapes root: {record.path}")
        return full_path

    def delete_one(self, record_id: int) -> FileRecord:
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record not found: {record_id}")

        full_path = self._resolve(record)
        os.unlink(full_path)

        self.store.delete(record.id)
        self.store.commit()
        self.logger.info("delete_success id=%s path=%s size=%s", record.id, record.path, record.size)
        return record

    def delete_many(self, record_ids: Sequence[int]) -> dict[str, Any]:
        deleted = 0
        freed = 0
        errors: list[str] = []

        for record_id in record_ids:
            try:
                record = self.delete_one(record_id)
            except (RecordNotFoundError, OSError) as exc:
                errors.append(f"{record_id}: {exc}")
                self.logger.error("delete_failed id=%s err=%s", record_id, exc)
                continue
            deleted += 1
            freed += record.size

        return {
            "success": not errors,
            "deleted_count": deleted,
            "freed_bytes": freed,
            "errors": errors,
        }


# ---------------------------- Job Coordinator ------------------------------- #


class JobCoordinator:
    """Single-flight scan -> hash state machine.

    States are idle, scanning, hashing, done and error. Every transition goes
    through one lock, so admitting a job is an atomic check-and-set; a trigger
    while scanning or hashing raises ScanInProgressError and changes nothing.
    Progress is readable at any time through snapshot().
    """

    def __init__(self, db_path: Path, config: ScanConfig, logger: logging.Logger):
        self.db_path = db_path
        self.config = config
        self.logger = logger
        self._lock = threading.Lock()
        self._progress = ScanProgress()
        self._cancel = threading.Event()
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nas-dedup-job")

    # -- observation -- #

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dataclasses.asdict(self._progress)

    @property
    def status(self) -> str:
        with self._lock:
            return self._progress.status

    def is_running(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def add_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[dict[str, Any]], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, snapshot: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.warning("progress_listener_failed err=%s", exc)

    # -- transitions -- #

    def _begin(self, status: str, message: str) -> None:
        with self._lock:
            if self._progress.status in ACTIVE_STATUSES:
                raise ScanInProgressError("Scan already in progress")
            self._cancel.clear()
            self._progress = ScanProgress(status=status, message=message, started_at=now_utc_iso())
            snap = dataclasses.asdict(self._progress)
        self.logger.info("job_start status=%s", status)
        self._notify(snap)

    def _update(self, notify: bool = True, **changes: Any) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self._progress, key, value)
            snap = dataclasses.asdict(self._progress)
        if notify:
            self._notify(snap)

    def _finish(self, status: str, message: str) -> None:
        self._update(status=status, message=message, current_file=None, finished_at=now_utc_iso())

    def _on_walk_progress(self, count: int, name: str) -> None:
        self._update(notify=count % PROGRESS_NOTIFY_EVERY == 0, scanned_files=count, current_file=name)

    def _on_hash_progress(self, count: int, name: str) -> None:
        self._update(notify=count % PROGRESS_NOTIFY_EVERY == 0, hash_processed=count, current_file=name)

    def cancel(self) -> bool:
        with self._lock:
            if self._progress.status not in ACTIVE_STATUSES:
                return False
            self._cancel.set()
            self._progress.message = "Cancelling..."
        self.logger.info("job_cancel_requested")
        return True

    # -- phases -- #

    def _hash_phase(self, store: InventoryStore) -> int:
        hasher = LazyHasher(
            store,
            self.config.root,
            self.logger,
            progress_cb=self._on_hash_progress,
            should_stop=self._cancel.is_set,
        )
        self._update(hash_candidates=hasher.pending_count(), hash_processed=0)
        return hasher.run()

    def _scan_job(self, store: InventoryStore, subpath: str) -> dict[str, Any]:
        walker = DirectoryWalker(
            store,
            self.config,
            self.logger,
            progress_cb=self._on_walk_progress,
            should_stop=self._cancel.is_set,
        )
        files_counted = walker.walk(subpath)

        self._update(
            status=STATUS_HASHING,
            total_files=files_counted,
            scanned_files=files_counted,
            current_file=None,
            message="Analyzing duplicate candidates...",
        )
        hashed = self._hash_phase(store)

        message = f"Scan complete: {files_counted} files, {hashed} newly hashed"
        self._finish(STATUS_DONE, message)
        self.logger.info("scan_complete files=%s hashed=%s", files_counted, hashed)
        return {"success": True, "files_counted": files_counted, "hashed_count": hashed, "message": message}

    def _hash_job(self, store: InventoryStore) -> dict[str, Any]:
        hashed = self._hash_phase(store)
        message = f"Analysis complete: {hashed} files fingerprinted"
        self._finish(STATUS_DONE, message)
        return {"success": True, "hashed_count": hashed, "message": message}

    def _run(self, job: Callable[..., dict[str, Any]], *args: Any) -> dict[str, Any]:
        try:
            with store_session(self.db_path) as store:
                return job(store, *args)
        except JobCancelledError:
            self.logger.warning("job_cancelled")
            self._finish(STATUS_IDLE, "Scan cancelled")
            return {"success": False, "code": "SCAN_CANCELLED", "error": "Scan cancelled"}
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("job_failed err=%s\n%s", exc, traceback.format_exc())
            self._finish(STATUS_ERROR, f"Scan failed: {exc}")
            return {"success": False, "code": "SCAN_FAILED", "error": str(exc)}

    def _run_scan(self, subpath: str) -> dict[str, Any]:
        result = self._run(self._scan_job, subpath)
        result.setdefault("files_counted", 0)
        return result

    def _run_hash(self) -> dict[str, Any]:
        result = self._run(self._hash_job)
        result.setdefault("hashed_count", 0)
        return result

    # -- entry points -- #

    def run_scan(self, subpath: str = "") -> dict[str, Any]:
        """Run walk + hash on the calling thread; raises ScanInProgressError on conflict."""
        self._begin(STATUS_SCANNING, "Scanning file system...")
        return self._run_scan(subpath)

    def start_scan(self, subpath: str = "") -> Future:
        """Admit a walk + hash job and run it on the coordinator's worker thread."""
        self._begin(STATUS_SCANNING, "Scanning file system...")
        return self._executor.submit(self._run_scan, subpath)

    def run_hash(self) -> dict[str, Any]:
        self._begin(STATUS_HASHING, "Analyzing duplicate candidates...")
        return self._run_hash()

    def shutdown(self, wait: bool = True) -> None:
        self._cancel.set()
        self._executor.shutdown(wait=wait)


# ------------------------------- Orchestrator ------------------------------- #


class Engine:
    """Top-level orchestrator exposing the scan/query/delete operation contract."""

    def __init__(
        self,
        db_path: Path,
        root: str,
        log_file: Path = DEFAULT_LOG_FILE,
        rehash_changed: bool = False,
    ):
        self.logger = setup_logger(log_file)
        self.root = os.path.realpath(os.path.expanduser(root))
        try:
            with store_session(db_path):
                pass
            self.db_path = db_path
        except (OSError, sqlite3.Error) as exc:
            fallback_db = Path(tempfile.gettempdir()) / APP_NAME / "inventory.db"
            self.logger.warning("db_path_unavailable path=%s err=%s fallback=%s", db_path, exc, fallback_db)
            with store_session(fallback_db):
                pass
            self.db_path = fallback_db

        self.config = ScanConfig(root=self.root, rehash_changed=rehash_changed)
        self.coordinator = JobCoordinator(self.db_path, self.config, self.logger)

    def close(self) -> None:
        self.coordinator.shutdown()

    def session(self) -> contextlib.AbstractContextManager[InventoryStore]:
        return store_session(self.db_path)

    def trigger_scan(self, wait: bool = True, subpath: str = "") -> dict[str, Any]:
        try:
            if wait:
                return self.coordinator.run_scan(subpath)
            self.coordinator.start_scan(subpath)
        except ScanInProgressError as exc:
            return {"success": False, "code": "SCAN_IN_PROGRESS", "files_counted": 0, "error": str(exc)}
        return {"success": True, "started": True, "files_counted": 0}

    def cancel_scan(self) -> dict[str, Any]:
        if self.coordinator.cancel():
            return {"success": True}
        return {"success": False, "code": "NO_ACTIVE_SCAN", "error": "No scan in progress"}

    def analyze_duplicates(self) -> dict[str, Any]:
        try:
            return self.coordinator.run_hash()
        except ScanInProgressError as exc:
            return {"success": False, "code": "SCAN_IN_PROGRESS", "hashed_count": 0, "error": str(exc)}

    def get_duplicate_groups(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self.session() as store:
            return [g.as_dict() for g in DuplicateGrouper(store).groups(limit=limit)]

    def get_scan_stats(self) -> dict[str, int]:
        with self.session() as store:
            return DuplicateGrouper(store).stats()

    def get_scan_progress(self) -> dict[str, Any]:
        return self.coordinator.snapshot()

    def delete_file(self, record_id: int) -> dict[str, Any]:
        with self.session() as store:
            executor = DeletionExecutor(store, self.root, self.logger)
            try:
                executor.delete_one(record_id)
            except RecordNotFoundError as exc:
                return {"success": False, "code": "RECORD_NOT_FOUND", "error": str(exc)}
            except OSError as exc:
                self.logger.error("delete_failed id=%s err=%s", record_id, exc)
                return {"success": False, "code": "DELETE_FAILED", "error": str(exc)}
        return {"success": True}

    def delete_files(self, record_ids: Sequence[int]) -> dict[str, Any]:
        with self.session() as store:
            return DeletionExecutor(store, self.root, self.logger).delete_many(record_ids)


# -------------------------------- CLI -------------------------------------- #


def export_json(path: Path, obj: Any) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=True), encoding="utf-8")


def require_confirm(args: argparse.Namespace, message: str) -> bool:
    if getattr(args, "yes", False):
        return True
    if not sys.stdin.isatty():
        return False
    ans = input(f"{message} [y/N]: ").strip().lower()
    return ans in {"y", "yes"}


def command_scan(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if args.no_hash:
        with engine.session() as store:
            files_counted = DirectoryWalker(store, engine.config, engine.logger).walk(args.subpath)
        return {"success": True, "files_counted": files_counted, "hashed_count": 0}
    return engine.trigger_scan(wait=True, subpath=args.subpath)


def command_hash(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    return engine.analyze_duplicates()


def command_duplicates(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    groups = engine.get_duplicate_groups(limit=args.limit)
    for g in groups:
        g["size_human"] = human_bytes(g["size"])
        g["wasted_space_human"] = human_bytes(g["wasted_space"])
    return {
        "success": True,
        "group_count": len(groups),
        "wasted_space": sum(g["wasted_space"] for g in groups),
        "groups": groups,
    }


def command_stats(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    stats = engine.get_scan_stats()
    stats["total_size_human"] = human_bytes(stats["total_size"])
    stats["wasted_space_human"] = human_bytes(stats["wasted_space"])
    return stats


def command_delete(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if not require_confirm(args, f"Permanently delete {len(args.ids)} file(s)?"):
        return {"success": False, "deleted_count": 0, "errors": ["Deletion requires confirmation (--yes)"]}
    return engine.delete_files(args.ids)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nas-dedup",
        description="Incremental duplicate detection for a storage root",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--root", default=os.getenv("NAS_DEDUP_ROOT", str(Path.cwd())), help="Storage root to inventory")
    parser.add_argument("--db", default=os.getenv("NAS_DEDUP_DB", str(DEFAULT_DB)), help="SQLite inventory path")
    parser.add_argument("--log-file", default=os.getenv("NAS_DEDUP_LOG", str(DEFAULT_LOG_FILE)), help="Action log file")
    parser.add_argument("--output", default=None, help="Also write the JSON result to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("scan", help="Walk the tree, then hash size collisions")
    p.add_argument("--subpath", default="", help="Only walk this root-relative directory")
    p.add_argument("--no-hash", action="store_true", help="Skip the hashing phase")
    p.add_argument("--rehash-changed", action="store_true", help="Clear digests of files whose size/mtime changed")

    sub.add_parser("hash", help="Hash unhashed records whose size collides")

    p = sub.add_parser("duplicates", help="List duplicate groups, biggest reclaim first")
    p.add_argument("--limit", type=int, default=None)

    sub.add_parser("stats", help="Inventory totals and wasted space")

    p = sub.add_parser("delete", help="Delete files and their records by id")
    p.add_argument("ids", nargs="+", type=int)
    p.add_argument("--yes", action="store_true", help="Non-interactive yes for confirmation")

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default=os.getenv("NAS_DEDUP_HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("NAS_DEDUP_PORT", "8002")))

    return parser


def dispatch(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    cmd = args.command
    if cmd == "scan":
        return command_scan(engine, args)
    if cmd == "hash":
        return command_hash(engine, args)
    if cmd == "duplicates":
        return command_duplicates(engine, args)
    if cmd == "stats":
        return command_stats(engine, args)
    if cmd == "delete":
        return command_delete(engine, args)
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        from nas_dedup.dedup_server import run_server

        return run_server(
            root=args.root,
            db_path=Path(args.db),
            log_file=Path(args.log_file),
            host=args.host,
            port=args.port,
        )

    engine = Engine(
        db_path=Path(args.db),
        root=args.root,
        log_file=Path(args.log_file),
        rehash_changed=getattr(args, "rehash_changed", False) or env_flag("NAS_DEDUP_REHASH_CHANGED"),
    )

    try:
        result = dispatch(engine, args)
        if args.output:
            export_json(Path(args.output), result)
        ok = bool(result.get("success", True))
        print(json.dumps({
            "status": "ok" if ok else "error",
            "command": args.command,
            "result": result,
            "timestamp": now_utc_iso(),
        }, indent=2))
        return 0 if ok else 1
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
