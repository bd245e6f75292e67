from __future__ import annotations

from pathlib import Path

import pytest

from memory.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "story.db")
