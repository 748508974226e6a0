"""Shared fixtures and helpers for the linkage test suite."""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any

import pytest

from linkage.config import get_config
from linkage.storage import Storage


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the default database and backup paths into ``tmp_path``.

    Tests never touch the user's real database at ``~/.linkage``.
    """
    monkeypatch.setenv("LINKAGE_DB_PATH", str(tmp_path / "default.db"))
    monkeypatch.setenv("LINKAGE_BACKUP_DIR", str(tmp_path / "backups"))
    cfg = get_config(reload=True)
    yield cfg
    monkeypatch.undo()
    get_config(reload=True)


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    s = Storage(tmp_path / "test.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL access bypassing the bulk writer
# ---------------------------------------------------------------------------


async def insert_record(
    storage: Storage,
    collection: str,
    body: dict[str, Any],
) -> str:
    """Insert a document directly via SQL and return its id."""
    doc_id = uuid.uuid4().hex
    await storage.execute_write(
        "INSERT INTO documents (id, collection, body) VALUES (?, ?, ?)",
        (doc_id, collection, json.dumps(body)),
    )
    return doc_id


async def fetch_records(storage: Storage, collection: str) -> list[dict[str, Any]]:
    """Return every document body in *collection*, in insertion order."""
    rows = await storage.execute(
        "SELECT body FROM documents WHERE collection = ? ORDER BY rowid",
        (collection,),
    )
    return [json.loads(row["body"]) for row in rows]


async def weights_by_pair(storage: Storage, collection: str) -> dict[tuple[str, str], float]:
    """Map ``(concept_A, concept_B)`` to the stored weight."""
    return {
        (r["concept_A"], r["concept_B"]): r["weight"]
        for r in await fetch_records(storage, collection)
    }
