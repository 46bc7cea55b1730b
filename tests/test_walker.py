"""
Tests for DirectoryWalker: exclusions, subpath scans, incremental re-walks
and tolerance of unreadable directories.
"""
import os

import pytest

from nas_dedup import dedup_engine
from nas_dedup.dedup_engine import DirectoryWalker, JobCancelledError, ScanConfig

EXPECTED_PATHS = {"a.txt", "c.txt", "notes/readme.md", "photos/b.txt"}


def _paths(store):
    return {r.path for r in store.iter_records()}


def _walker(store, root, logger, **kwargs):
    return DirectoryWalker(store, ScanConfig(root=str(root)), logger, **kwargs)


class TestWalk:
    def test_records_every_regular_file_outside_excluded_names(self, store, nas_root, logger):
        count = _walker(store, nas_root, logger).walk()

        assert count == 4
        assert _paths(store) == EXPECTED_PATHS

    def test_new_records_are_unhashed_with_stat_metadata(self, store, nas_root, logger):
        _walker(store, nas_root, logger).walk()

        record = store.get_by_path("notes/readme.md")
        assert record.size == len(b"unique notes")
        assert record.mtime == pytest.approx(os.stat(nas_root / "notes" / "readme.md").st_mtime)
        assert record.hash is None
        assert record.scanned_at

    def test_rewalk_is_idempotent(self, store, nas_root, logger):
        walker = _walker(store, nas_root, logger)
        walker.walk()
        ids = {r.path: r.id for r in store.iter_records()}

        assert walker.walk() == 4
        assert store.count() == 4
        assert {r.path: r.id for r in store.iter_records()} == ids

    def test_rewalk_picks_up_size_change(self, store, nas_root, logger):
        walker = _walker(store, nas_root, logger)
        walker.walk()
        (nas_root / "c.txt").write_bytes(b"y" * 1500)

        walker.walk()
        assert store.get_by_path("c.txt").size == 1500

    def test_vanished_files_are_not_pruned(self, store, nas_root, logger):
        walker = _walker(store, nas_root, logger)
        walker.walk()
        (nas_root / "c.txt").unlink()

        assert walker.walk() == 3
        assert store.get_by_path("c.txt") is not None

    def test_small_batches_flush_everything(self, store, nas_root, logger, monkeypatch):
        monkeypatch.setattr(dedup_engine, "SCAN_BATCH_SIZE", 1)
        assert _walker(store, nas_root, logger).walk() == 4
        assert store.count() == 4

    def test_custom_skip_names(self, store, nas_root, logger):
        config = ScanConfig(root=str(nas_root), skip_names={"photos"})
        DirectoryWalker(store, config, logger).walk()
        assert "photos/b.txt" not in _paths(store)
        assert "node_modules/pkg/copy.txt" in _paths(store)

    def test_progress_callback_counts_up(self, store, nas_root, logger):
        seen = []
        _walker(store, nas_root, logger, progress_cb=lambda n, name: seen.append(n)).walk()
        assert seen == [1, 2, 3, 4]


class TestSubpath:
    def test_subpath_only_touches_subtree(self, store, nas_root, logger):
        count = _walker(store, nas_root, logger).walk("photos")

        assert count == 1
        assert _paths(store) == {"photos/b.txt"}

    @pytest.mark.parametrize("subpath", ["../", "photos/../..", "../nas-other"])
    def test_escaping_subpath_rejected(self, store, nas_root, logger, subpath):
        with pytest.raises(ValueError, match="escapes root"):
            _walker(store, nas_root, logger).walk(subpath)
        assert store.count() == 0

    def test_subpath_must_be_directory(self, store, nas_root, logger):
        with pytest.raises(ValueError, match="not a directory"):
            _walker(store, nas_root, logger).walk("a.txt")

    def test_missing_root_rejected(self, store, tmp_path, logger):
        with pytest.raises(ValueError, match="Root is not a directory"):
            _walker(store, tmp_path / "missing", logger).walk()


class TestResilience:
    def test_unreadable_directory_is_skipped(self, store, nas_root, logger, monkeypatch):
        real_scandir = os.scandir

        def fake_scandir(path):
            if str(path).endswith("notes"):
                raise PermissionError("denied")
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", fake_scandir)

        assert _walker(store, nas_root, logger).walk() == 3
        assert _paths(store) == EXPECTED_PATHS - {"notes/readme.md"}

    def test_symlinks_are_not_followed(self, store, nas_root, tmp_path, logger):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.bin").write_bytes(b"s" * 1000)
        os.symlink(outside, nas_root / "linked_dir")
        os.symlink(nas_root / "a.txt", nas_root / "a_link.txt")

        _walker(store, nas_root, logger).walk()
        assert _paths(store) == EXPECTED_PATHS

    def test_stop_request_raises_and_keeps_partial_batch(self, store, nas_root, logger):
        calls = {"n": 0}

        def stop_after_two():
            calls["n"] += 1
            return calls["n"] > 2

        walker = _walker(store, nas_root, logger, should_stop=stop_after_two)
        with pytest.raises(JobCancelledError):
            walker.walk()
        assert store.count() <= 2
