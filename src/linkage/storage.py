"""Document store driver for the linkage system.

Keeps JSON documents grouped into named *collections* inside a SQLite
database and exposes the capability set the ingestion and normalization
stages are written against:

- collection clearing and per-collection field mappings,
- a buffered bulk writer (:class:`BulkSession`),
- unbounded term aggregations,
- top-N term queries,
- server-side scroll cursors with a keep-alive window (:class:`ScrollCursor`).

All public methods are async-friendly, wrapping synchronous sqlite3 calls
via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections -- each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from linkage.storage import FieldSpec, Storage

    async with Storage(config.db_path) as store:
        await store.set_schema("triples", {"concept_A": FieldSpec("keyword")})
        async with store.bulk() as bulk:
            await bulk.index("triples", {"concept_A": "ocean", "weight": 0.5})
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, TypeVar

import anyio

from linkage.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StoreError(RuntimeError):
    """A store I/O operation failed.

    Attributes
    ----------
    collection:
        The collection the failing operation targeted, when known.
    stage:
        Which operation failed (``clear``, ``schema``, ``flush``,
        ``aggregate``, ``query``, ``scroll`` ...).
    """

    def __init__(
        self,
        message: str,
        *,
        collection: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.collection = collection
        self.stage = stage
        prefix = f"{stage or 'store'} failed"
        if collection is not None:
            prefix += f" for collection {collection!r}"
        super().__init__(f"{prefix}: {message}")


class ScrollExpiredError(StoreError):
    """A scroll cursor was read after its keep-alive window elapsed."""


@contextmanager
def _store_errors(stage: str, collection: str | None = None) -> Iterator[None]:
    """Re-raise :class:`sqlite3.Error` as :class:`StoreError` with context."""
    try:
        yield
    except sqlite3.Error as exc:
        raise StoreError(str(exc), collection=collection, stage=stage) from exc


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

FIELD_TYPES: tuple[str, ...] = ("keyword", "text", "double", "long")
"""Allowed values for :attr:`FieldSpec.type`."""

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Mapping of one document field.

    ``exact_match`` fields are compared verbatim and may be used as term
    filters and aggregation keys.
    """

    type: str = "keyword"
    exact_match: bool = True


@dataclass(frozen=True, slots=True)
class TermBucket:
    """One bucket of a term aggregation."""

    key: Any
    doc_count: int


@dataclass
class Document:
    """A stored document: its id, owning collection and JSON source."""

    id: str
    collection: str
    source: dict[str, Any]

    @classmethod
    def from_row(cls, row: Any) -> Document:
        return cls(
            id=row["id"],
            collection=row["collection"],
            source=json.loads(row["body"]),
        )


def _validate_field_name(name: str) -> None:
    """Raise :class:`ValueError` if *name* cannot be used as a JSON path key."""
    if not isinstance(name, str) or not _FIELD_NAME_RE.match(name):
        raise ValueError(f"Invalid field name {name!r}")


def _field_expr(name: str) -> str:
    """SQL expression selecting field *name* from a document body.

    Must stay textually identical to the expression used in the field
    indexes, otherwise SQLite will not use them.
    """
    _validate_field_name(name)
    return f"json_extract(body, '$.{name}')"


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Documents, grouped by collection
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Per-collection field mappings
CREATE TABLE IF NOT EXISTS collection_fields (
    collection TEXT NOT NULL,
    field TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('keyword','text','double','long')),
    exact_match INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (collection, field)
);

-- Server-side scroll snapshots
CREATE TABLE IF NOT EXISTS scroll_contexts (
    scroll_id TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    expires_at REAL NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS scroll_hits (
    scroll_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    doc_id TEXT NOT NULL,
    PRIMARY KEY (scroll_id, position)
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
CREATE INDEX IF NOT EXISTS idx_scroll_contexts_expires ON scroll_contexts(expires_at);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite document store.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.  When given,
        backups go to a ``backups`` directory beside it and are named after
        its stem; otherwise the configured ``backup_dir`` is used.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._cfg = cfg
        self._db_path: Path = db_path or cfg.db_path
        # An explicit database keeps its own backup set beside it.
        self._backup_dir: Path = (
            self._db_path.parent / "backups" if db_path else cfg.backup_dir
        )
        self._backup_prefix: str = self._db_path.stem
        self._backup_name_re = re.compile(
            rf"^{re.escape(self._backup_prefix)}_\d{{8}}T\d{{12}}Z\.db$"
        )
        self._backup_count: int = cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory and backup directory.
        2. Creates all tables and indexes.
        3. Runs an automatic backup (pruning old backups).
        """
        with _store_errors("initialize"):
            await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        sqlite_version = tuple(
            int(x) for x in sqlite3.sqlite_version.split(".")
        )
        if sqlite_version < (3, 25, 0):
            raise RuntimeError(
                f"SQLite {sqlite3.sqlite_version} is too old; linkage requires >= 3.25.0 "
                "(needed for window function support)"
            )

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with WAL journal mode, a busy timeout
        and :class:`sqlite3.Row` as row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=-64000")  # ~64 MB
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Raw query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows."""
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The number of rows affected.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.rowcount
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  Commit happens on success,
        rollback on exception.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Collections and mappings
    # ------------------------------------------------------------------

    async def clear_collection(self, collection: str) -> int:
        """Delete every document in *collection*.

        Idempotent: clearing an empty or unknown collection is a no-op.
        The collection's field mapping is left untouched.

        Returns
        -------
        int
            Number of documents removed.
        """
        with _store_errors("clear", collection):
            removed = await self.execute_transaction(
                lambda conn: conn.execute(
                    "DELETE FROM documents WHERE collection = ?",
                    (collection,),
                ).rowcount
            )
        log.info("Cleared collection %r (%d documents removed)", collection, removed)
        return removed

    async def set_schema(
        self,
        collection: str,
        fields: Mapping[str, FieldSpec],
    ) -> None:
        """Replace the field mapping of *collection*.

        Exact-match fields get a JSON expression index so that term
        filters and aggregations on them stay cheap.

        Raises
        ------
        ValueError
            If a field name is not an identifier or a type is unknown.
        """
        for name, spec in fields.items():
            _validate_field_name(name)
            if spec.type not in FIELD_TYPES:
                raise ValueError(
                    f"Invalid field type {spec.type!r} for {name!r}. "
                    f"Must be one of: {', '.join(FIELD_TYPES)}"
                )

        def _do_set(conn: sqlite3.Connection) -> None:
            conn.execute(
                "DELETE FROM collection_fields WHERE collection = ?",
                (collection,),
            )
            conn.executemany(
                "INSERT INTO collection_fields (collection, field, type, exact_match) "
                "VALUES (?, ?, ?, ?)",
                [
                    (collection, name, spec.type, int(spec.exact_match))
                    for name, spec in fields.items()
                ],
            )
            for name, spec in fields.items():
                if spec.exact_match:
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_documents_field_{name.lower()} "
                        f"ON documents(collection, {_field_expr(name)})"
                    )

        with _store_errors("schema", collection):
            await self.execute_transaction(_do_set)
        log.info(
            "Mapping set for collection %r: %s",
            collection,
            ", ".join(f"{n}:{s.type}" for n, s in fields.items()),
        )

    async def get_schema(self, collection: str) -> dict[str, FieldSpec]:
        """Return the field mapping of *collection* (empty if none is set)."""
        with _store_errors("schema", collection):
            rows = await self.execute(
                "SELECT field, type, exact_match FROM collection_fields "
                "WHERE collection = ? ORDER BY field",
                (collection,),
            )
        return {
            row["field"]: FieldSpec(type=row["type"], exact_match=bool(row["exact_match"]))
            for row in rows
        }

    async def _require_exact_match(self, collection: str, field: str, stage: str) -> None:
        """Raise :class:`StoreError` unless *field* is mapped exact-match."""
        _validate_field_name(field)
        schema = await self.get_schema(collection)
        spec = schema.get(field)
        if spec is None or not spec.exact_match:
            raise StoreError(
                f"field {field!r} is not mapped as an exact-match field",
                collection=collection,
                stage=stage,
            )

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    def bulk(self, bulk_actions: int | None = None) -> BulkSession:
        """Open a buffered write session.

        Use as an async context manager; leaving the block flushes every
        buffered operation.
        """
        return BulkSession(self, bulk_actions or self._cfg.bulk.bulk_actions)

    async def _apply_ops(self, ops: list[_WriteOp]) -> None:
        """Apply a batch of write operations in one transaction."""

        def _do_apply(conn: sqlite3.Connection) -> None:
            for op in ops:
                if op.action == "index":
                    conn.execute(
                        "INSERT INTO documents (id, collection, body) VALUES (?, ?, ?)",
                        (op.doc_id, op.collection, json.dumps(op.body)),
                    )
                    continue

                updated = conn.execute(
                    "UPDATE documents SET body = json_set(body, ?, ?), "
                    "updated_at = datetime('now') "
                    "WHERE id = ? AND collection = ?",
                    (f"$.{op.field}", op.value, op.doc_id, op.collection),
                ).rowcount
                if updated == 0:
                    raise StoreError(
                        f"document {op.doc_id!r} is missing",
                        collection=op.collection,
                        stage="flush",
                    )

        with _store_errors("flush", ops[0].collection if ops else None):
            await self.execute_transaction(_do_apply)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Retrieve a document by id, or ``None`` if it does not exist."""
        with _store_errors("query", collection):
            rows = await self.execute(
                "SELECT id, collection, body FROM documents WHERE id = ? AND collection = ?",
                (doc_id, collection),
            )
        if not rows:
            return None
        return Document.from_row(rows[0])

    async def count(self, collection: str) -> int:
        """Number of documents in *collection*."""
        with _store_errors("query", collection):
            rows = await self.execute(
                "SELECT COUNT(*) AS cnt FROM documents WHERE collection = ?",
                (collection,),
            )
        return rows[0]["cnt"]

    async def aggregate_terms(
        self,
        collection: str,
        field: str,
        size: int = 0,
    ) -> list[TermBucket]:
        """Group *collection* by *field* and return one bucket per value.

        Buckets are ordered by document count descending, then by key.
        ``size=0`` requests every bucket; the result is read in pages of
        ``aggregation.page_size`` so the distinct-value count is never
        silently capped.
        """
        if size < 0:
            raise ValueError(f"Aggregation size must be >= 0, got {size}")
        await self._require_exact_match(collection, field, "aggregate")

        expr = _field_expr(field)
        page_size = self._cfg.aggregation.page_size
        buckets: list[TermBucket] = []

        with _store_errors("aggregate", collection):
            while True:
                limit = page_size if size == 0 else min(page_size, size - len(buckets))
                rows = await self.execute(
                    f"SELECT {expr} AS term, COUNT(*) AS doc_count "
                    f"FROM documents "
                    f"WHERE collection = ? AND {expr} IS NOT NULL "
                    f"GROUP BY term "
                    f"ORDER BY doc_count DESC, term ASC "
                    f"LIMIT ? OFFSET ?",
                    (collection, limit, len(buckets)),
                )
                buckets.extend(TermBucket(row["term"], row["doc_count"]) for row in rows)
                if len(rows) < limit or (size and len(buckets) >= size):
                    break

        log.debug(
            "Aggregated %d distinct %r values in collection %r",
            len(buckets),
            field,
            collection,
        )
        return buckets

    async def query_top(
        self,
        collection: str,
        field: str,
        value: Any,
        sort_field: str,
        descending: bool = True,
        size: int = 1,
    ) -> list[Document]:
        """Return the first *size* documents where ``field == value``.

        Documents are ordered by *sort_field* (ties broken by id).
        """
        if size < 1:
            raise ValueError(f"Query size must be >= 1, got {size}")
        await self._require_exact_match(collection, field, "query")

        direction = "DESC" if descending else "ASC"
        with _store_errors("query", collection):
            rows = await self.execute(
                f"SELECT id, collection, body FROM documents "
                f"WHERE collection = ? AND {_field_expr(field)} = ? "
                f"ORDER BY {_field_expr(sort_field)} {direction}, id ASC "
                f"LIMIT ?",
                (collection, value, size),
            )
        return [Document.from_row(r) for r in rows]

    async def scroll(
        self,
        collection: str,
        field: str,
        value: Any,
        sort_field: str,
        descending: bool = True,
        page_size: int | None = None,
        keep_alive: float | None = None,
    ) -> ScrollCursor:
        """Open a scroll cursor over documents where ``field == value``.

        The matching ids are snapshotted server-side in sort order, so the
        cursor is unaffected by writes to the same documents while it is
        being consumed.  The snapshot lives for *keep_alive* seconds and is
        renewed on each page read; expired snapshots are swept whenever a
        new one is opened.
        """
        scroll_cfg = self._cfg.scroll
        page_size = page_size or scroll_cfg.page_size
        keep_alive = keep_alive if keep_alive is not None else scroll_cfg.keep_alive_seconds
        if page_size < 1:
            raise ValueError(f"Page size must be >= 1, got {page_size}")
        await self._require_exact_match(collection, field, "scroll")

        scroll_id = uuid.uuid4().hex
        direction = "DESC" if descending else "ASC"
        sort_expr = _field_expr(sort_field)
        filter_expr = _field_expr(field)

        def _do_open(conn: sqlite3.Connection) -> int:
            now = time.time()
            conn.execute(
                "DELETE FROM scroll_hits WHERE scroll_id IN "
                "(SELECT scroll_id FROM scroll_contexts WHERE expires_at < ?)",
                (now,),
            )
            conn.execute("DELETE FROM scroll_contexts WHERE expires_at < ?", (now,))
            conn.execute(
                "INSERT INTO scroll_contexts (scroll_id, collection, expires_at) "
                "VALUES (?, ?, ?)",
                (scroll_id, collection, now + keep_alive),
            )
            return conn.execute(
                f"INSERT INTO scroll_hits (scroll_id, position, doc_id) "
                f"SELECT ?, ROW_NUMBER() OVER (ORDER BY {sort_expr} {direction}, id ASC), id "
                f"FROM documents WHERE collection = ? AND {filter_expr} = ?",
                (scroll_id, collection, value),
            ).rowcount

        with _store_errors("scroll", collection):
            total = await self.execute_transaction(_do_open)
        log.debug(
            "Opened scroll %s on %r (%s=%r): %d hits",
            scroll_id,
            collection,
            field,
            value,
            total,
        )
        return ScrollCursor(
            self,
            scroll_id=scroll_id,
            collection=collection,
            total=total,
            page_size=page_size,
            renew_keep_alive=scroll_cfg.renew_keep_alive_seconds,
        )

    async def collection_stats(self) -> dict[str, int]:
        """Return document counts keyed by collection name."""
        with _store_errors("query"):
            rows = await self.execute(
                "SELECT collection, COUNT(*) AS cnt FROM documents "
                "GROUP BY collection ORDER BY collection"
            )
        return {row["collection"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.
        """
        with _store_errors("backup"):
            return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        """Synchronous backup implementation."""
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"{self._backup_prefix}_{timestamp}.db"

        # Online backup API gives a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            (
                p
                for p in self._backup_dir.glob(f"{self._backup_prefix}_*.db")
                if self._backup_name_re.match(p.name)
            ),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Bulk session
# ---------------------------------------------------------------------------


@dataclass
class _WriteOp:
    action: str
    collection: str
    doc_id: str
    body: dict[str, Any] | None = None
    field: str | None = None
    value: Any = None


class BulkSession:
    """Buffered write session over a :class:`Storage`.

    Operations are queued and flushed in one transaction each time
    *bulk_actions* of them have accumulated.  Leaving the ``async with``
    block flushes the remainder and only returns once it is committed.
    If the block raises, the unflushed tail is discarded and the exception
    propagates; batches flushed earlier stay written.
    """

    def __init__(self, storage: Storage, bulk_actions: int) -> None:
        if bulk_actions < 1:
            raise ValueError(f"bulk_actions must be >= 1, got {bulk_actions}")
        self._storage = storage
        self._bulk_actions = bulk_actions
        self._pending: list[_WriteOp] = []
        self._closed = False
        self.submitted = 0
        self.flushed = 0

    @property
    def pending(self) -> int:
        """Operations buffered but not yet flushed."""
        return len(self._pending)

    async def index(self, collection: str, body: Mapping[str, Any]) -> str:
        """Queue a new document and return the id it will be stored under."""
        doc_id = uuid.uuid4().hex
        await self._submit(_WriteOp("index", collection, doc_id, body=dict(body)))
        return doc_id

    async def update(self, collection: str, doc_id: str, field: str, value: Any) -> None:
        """Queue a single-field update of an existing document."""
        _validate_field_name(field)
        await self._submit(_WriteOp("update", collection, doc_id, field=field, value=value))

    async def _submit(self, op: _WriteOp) -> None:
        if self._closed:
            raise RuntimeError("Bulk session is closed")
        self._pending.append(op)
        self.submitted += 1
        if len(self._pending) >= self._bulk_actions:
            await self.flush()

    async def flush(self) -> int:
        """Write every buffered operation now.

        Returns
        -------
        int
            Number of operations flushed.
        """
        if not self._pending:
            return 0
        ops, self._pending = self._pending, []
        await self._storage._apply_ops(ops)
        self.flushed += len(ops)
        log.debug("Bulk flush: %d operations (%d total)", len(ops), self.flushed)
        return len(ops)

    async def close(self) -> None:
        """Flush the remaining operations and refuse further submissions."""
        try:
            await self.flush()
        finally:
            self._closed = True

    async def __aenter__(self) -> BulkSession:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, *exc: object) -> None:
        if exc_type is None:
            await self.close()
            return
        if self._pending:
            log.warning(
                "Bulk session aborted: %d buffered operations discarded",
                len(self._pending),
            )
        self._pending = []
        self._closed = True


# ---------------------------------------------------------------------------
# Scroll cursor
# ---------------------------------------------------------------------------


class ScrollCursor:
    """Page-at-a-time iterator over a server-side scroll snapshot.

    Obtain one from :meth:`Storage.scroll`.  :meth:`next_page` returns an
    empty list once the snapshot is exhausted; :meth:`release` drops the
    snapshot early.  The cursor is stateful and must not be shared.
    """

    def __init__(
        self,
        storage: Storage,
        scroll_id: str,
        collection: str,
        total: int,
        page_size: int,
        renew_keep_alive: float,
    ) -> None:
        self._storage = storage
        self.scroll_id = scroll_id
        self.collection = collection
        self.total = total
        self._page_size = page_size
        self._renew_keep_alive = renew_keep_alive
        self._position = 0
        self._released = False

    async def next_page(self, keep_alive: float | None = None) -> list[Document]:
        """Fetch the next page and renew the keep-alive window.

        Raises
        ------
        ScrollExpiredError
            If the snapshot expired or was released.
        """
        if self._released:
            raise ScrollExpiredError(
                f"scroll {self.scroll_id} was released",
                collection=self.collection,
                stage="scroll",
            )
        keep_alive = keep_alive if keep_alive is not None else self._renew_keep_alive

        def _do_page(conn: sqlite3.Connection) -> tuple[int, list[Document]]:
            now = time.time()
            ctx = conn.execute(
                "SELECT expires_at FROM scroll_contexts WHERE scroll_id = ?",
                (self.scroll_id,),
            ).fetchone()
            if ctx is None or ctx["expires_at"] < now:
                raise ScrollExpiredError(
                    f"scroll {self.scroll_id} expired",
                    collection=self.collection,
                    stage="scroll",
                )
            conn.execute(
                "UPDATE scroll_contexts SET expires_at = ? WHERE scroll_id = ?",
                (now + keep_alive, self.scroll_id),
            )

            position = self._position
            docs: list[Document] = []
            while not docs:
                rows = conn.execute(
                    "SELECT h.position, d.id, d.collection, d.body "
                    "FROM scroll_hits h LEFT JOIN documents d ON d.id = h.doc_id "
                    "WHERE h.scroll_id = ? AND h.position > ? "
                    "ORDER BY h.position LIMIT ?",
                    (self.scroll_id, position, self._page_size),
                ).fetchall()
                if not rows:
                    break
                position = rows[-1]["position"]
                # Documents deleted since the snapshot are skipped.
                docs = [Document.from_row(r) for r in rows if r["id"] is not None]
            return position, docs

        with _store_errors("scroll", self.collection):
            self._position, docs = await self._storage.execute_transaction(_do_page)
        return docs

    async def pages(self) -> AsyncIterator[list[Document]]:
        """Lazily yield pages until the snapshot is exhausted."""
        while True:
            page = await self.next_page()
            if not page:
                return
            yield page

    async def release(self) -> None:
        """Drop the server-side snapshot.  Safe to call more than once."""
        if self._released:
            return

        def _do_release(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM scroll_hits WHERE scroll_id = ?", (self.scroll_id,))
            conn.execute("DELETE FROM scroll_contexts WHERE scroll_id = ?", (self.scroll_id,))

        with _store_errors("scroll", self.collection):
            await self._storage.execute_transaction(_do_release)
        self._released = True

    async def __aenter__(self) -> ScrollCursor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.release()
