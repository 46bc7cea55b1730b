"""
Shared fixtures for dedup engine tests.
Builds a small storage root with one duplicate pair, one same-size
non-duplicate and copies hidden inside excluded directories.
"""
import logging
from pathlib import Path

import pytest

from nas_dedup.dedup_engine import Engine, store_session

DUP_CONTENT = b"x" * 1000


@pytest.fixture
def nas_root(tmp_path) -> Path:
    """
    Layout:
    - a.txt, photos/b.txt: identical 1000-byte files (the duplicate pair)
    - c.txt: 1000 bytes, different content (size collision only)
    - notes/readme.md: unique size, never hashed
    - excluded copies of a.txt under dot-dirs, node_modules and $RECYCLE.BIN
    """
    root = tmp_path / "nas"
    (root / "photos").mkdir(parents=True)
    (root / "notes").mkdir()

    (root / "a.txt").write_bytes(DUP_CONTENT)
    (root / "photos" / "b.txt").write_bytes(DUP_CONTENT)
    (root / "c.txt").write_bytes(b"y" * 1000)
    (root / "notes" / "readme.md").write_bytes(b"unique notes")

    for excluded in (".hidden", "node_modules/pkg", "$RECYCLE.BIN", "@eaDir"):
        d = root / excluded
        d.mkdir(parents=True)
        (d / "copy.txt").write_bytes(DUP_CONTENT)
    (root / ".DS_Store").write_bytes(DUP_CONTENT)

    return root


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "db" / "inventory.db"


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("nas_dedup.tests")


@pytest.fixture
def store(db_path):
    with store_session(db_path) as s:
        yield s


@pytest.fixture
def engine(nas_root, db_path, tmp_path):
    eng = Engine(db_path=db_path, root=str(nas_root), log_file=tmp_path / "logs" / "actions.log")
    yield eng
    eng.close()


@pytest.fixture
def record_id(db_path):
    """Look up an inventory id by root-relative path."""

    def _lookup(path: str) -> int:
        with store_session(db_path) as s:
            record = s.get_by_path(path)
        assert record is not None, f"no record for {path}"
        return record.id

    return _lookup
