"""
Tests for DeletionExecutor.
A record is removed only after its file was removed.
"""
import os

import pytest

from nas_dedup.dedup_engine import (
    DeletionExecutor,
    DirectoryWalker,
    RecordNotFoundError,
    ScanConfig,
)


@pytest.fixture
def executor(store, nas_root, logger):
    DirectoryWalker(store, ScanConfig(root=str(nas_root)), logger).walk()
    return DeletionExecutor(store, str(nas_root), logger)


def _id(store, path):
    return store.get_by_path(path).id


class TestDeleteOne:
    def test_removes_file_then_record(self, executor, store, nas_root):
        rid = _id(store, "a.txt")

        record = executor.delete_one(rid)
        assert record.path == "a.txt"
        assert not (nas_root / "a.txt").exists()
        assert store.get(rid) is None

    def test_unknown_id(self, executor):
        with pytest.raises(RecordNotFoundError):
            executor.delete_one(999999)

    def test_missing_file_keeps_record(self, executor, store, nas_root):
        rid = _id(store, "c.txt")
        (nas_root / "c.txt").unlink()

        with pytest.raises(FileNotFoundError):
            executor.delete_one(rid)
        assert store.get(rid) is not None

    def test_unlink_failure_keeps_record(self, executor, store, nas_root, monkeypatch):
        rid = _id(store, "c.txt")

        def deny(path):
            raise PermissionError(f"Permission denied: {path}")

        monkeypatch.setattr(os, "unlink", deny)
        with pytest.raises(PermissionError):
            executor.delete_one(rid)
        monkeypatch.undo()

        assert store.get(rid) is not None
        assert (nas_root / "c.txt").exists()

    def test_record_outside_root_refused(self, executor, store, nas_root, tmp_path):
        victim = tmp_path / "outside.txt"
        victim.write_bytes(b"keep me")
        store.upsert_batch([("../outside.txt", "outside.txt", 7, 1.0, "2024-01-01T00:00:00+00:00")])
        store.commit()
        rid = store.conn.execute("SELECT id FROM files WHERE path='../outside.txt'").fetchone()[0]

        with pytest.raises(PermissionError, match="escapes root"):
            executor.delete_one(rid)
        assert victim.exists()
        assert store.get(rid) is not None


class TestDeleteMany:
    def test_partial_failure_does_not_abort_batch(self, executor, store, nas_root):
        ids = [_id(store, "a.txt"), 424242, _id(store, "c.txt")]

        result = executor.delete_many(ids)
        assert result["success"] is False
        assert result["deleted_count"] == 2
        assert result["freed_bytes"] == 2000
        assert result["errors"] == ["424242: Record not found: 424242"]
        assert not (nas_root / "a.txt").exists()
        assert not (nas_root / "c.txt").exists()

    def test_missing_middle_file_keeps_its_record(self, executor, store, nas_root):
        a_id, b_id, c_id = (_id(store, p) for p in ("a.txt", "photos/b.txt", "c.txt"))
        (nas_root / "photos" / "b.txt").unlink()

        result = executor.delete_many([a_id, b_id, c_id])
        assert result["success"] is False
        assert result["deleted_count"] == 2
        assert len(result["errors"]) == 1
        assert result["errors"][0].startswith(f"{b_id}: ")
        assert store.get(b_id) is not None
        assert store.get(a_id) is None
        assert store.get(c_id) is None
        assert not (nas_root / "a.txt").exists()
        assert not (nas_root / "c.txt").exists()

    def test_all_succeed(self, executor, store):
        result = executor.delete_many([_id(store, "a.txt")])
        assert result == {"success": True, "deleted_count": 1, "freed_bytes": 1000, "errors": []}

    def test_empty_batch(self, executor):
        result = executor.delete_many([])
        assert result["success"] is True
        assert result["deleted_count"] == 0
