"""CLI entry points for ingestion, normalization, and store maintenance.

Usage::

    python -m linkage ingest triples.csv --collection term_similarity --structured --symmetric
    python -m linkage normalize --collection term_similarity
    python -m linkage stats
    python -m linkage backup

Every command accepts ``--db PATH`` to point at a database other than the
configured one and ``--verbose`` for debug logging.

Triple files are CSV (``keyA,keyB,weight[,keyAId,keyBId]``, header row
optional) or JSON Lines (``.jsonl``, one object per line).
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import sys
from pathlib import Path

from linkage.ingestion import IngestionPipeline
from linkage.normalization import NormalizationEngine
from linkage.storage import Storage, StoreError
from linkage.triples import LinkageTriple

log = logging.getLogger(__name__)

_CSV_COLUMNS: tuple[str, ...] = ("keyA", "keyB", "weight", "keyAId", "keyBId")


# ------------------------------------------------------------------
# Triple file readers
# ------------------------------------------------------------------


def read_triples(path: Path) -> list[LinkageTriple]:
    """Load triples from a CSV or JSON Lines file.

    Raises
    ------
    ValueError
        If a row lacks either term label; the message names the line.
    """
    if path.suffix.lower() in (".jsonl", ".ndjson"):
        return _read_jsonl(path)
    return _read_csv(path)


def _read_jsonl(path: Path) -> list[LinkageTriple]:
    triples: list[LinkageTriple] = []
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                triples.append(LinkageTriple.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from exc
    return triples


def _read_csv(path: Path) -> list[LinkageTriple]:
    triples: list[LinkageTriple] = []
    with path.open(encoding="utf-8", newline="") as fh:
        for lineno, row in enumerate(csv.reader(fh), start=1):
            if not row or not any(cell.strip() for cell in row):
                continue
            # Header row.
            if lineno == 1 and row[0].strip() in ("keyA", "key_a"):
                continue
            data = dict(zip(_CSV_COLUMNS, (cell.strip() for cell in row)))
            try:
                triples.append(LinkageTriple.from_dict(data))
            except ValueError as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from exc
    return triples


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


async def _ingest(
    db_path: Path | None,
    source: Path,
    collection: str,
    structured: bool,
    symmetric: bool,
) -> str:
    triples = read_triples(source)
    async with Storage(db_path) as storage:
        result = await IngestionPipeline(storage).ingest(
            triples,
            collection,
            structured=structured,
            symmetric=symmetric,
        )
    return (
        f"Ingest complete: {result.triples} triples written as "
        f"{result.records} records to {collection!r}."
    )


async def _normalize(db_path: Path | None, collection: str) -> str:
    async with Storage(db_path) as storage:
        result = await NormalizationEngine(storage).normalize(collection)
    return (
        f"Normalize complete: {result.anchors} anchors in {collection!r}, "
        f"{result.normalized} rescaled, {result.skipped} skipped, "
        f"{result.updated} weights updated."
    )


async def _stats(db_path: Path | None) -> str:
    async with Storage(db_path) as storage:
        counts = await storage.collection_stats()
        lines = [f"linkage stats ({storage.db_path}):", ""]
    if not counts:
        lines.append("  no documents")
    for collection, count in counts.items():
        lines.append(f"  {collection:30s} {count:>10,d}")
    return "\n".join(lines)


async def _backup(db_path: Path | None) -> str:
    async with Storage(db_path) as storage:
        path = await storage.backup()
    return f"Backup written to {path}"


# ------------------------------------------------------------------
# Argument parsing and dispatch
# ------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database (default: configured db_path)",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    parser = argparse.ArgumentParser(
        prog="linkage",
        description="Store and normalize weighted term linkage triples",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser(
        "ingest",
        parents=[common],
        help="Replace a collection with triples read from a file",
    )
    ingest.add_argument("source", type=Path, help="CSV or JSON Lines triple file")
    ingest.add_argument("--collection", required=True, help="Target collection")
    ingest.add_argument(
        "--structured",
        action="store_true",
        help="Write concept_A/concept_B records instead of flat keywords",
    )
    ingest.add_argument(
        "--symmetric",
        action="store_true",
        help="Also write the mirrored B->A record (requires --structured)",
    )

    normalize = sub.add_parser(
        "normalize",
        aliases=["normalise"],
        parents=[common],
        help="Scale each anchor's weights so its maximum is 1.0",
    )
    normalize.add_argument("--collection", required=True, help="Collection to normalize")

    sub.add_parser("stats", parents=[common], help="Show document counts per collection")
    sub.add_parser("backup", parents=[common], help="Snapshot the database")
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def dispatch(args: list[str]) -> int:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m linkage``,
        e.g. ``["normalize", "--collection", "term_similarity"]``.

    Returns
    -------
    int
        Process exit code.
    """
    parsed = _build_parser().parse_args(args)
    _configure_logging(parsed.verbose)

    try:
        if parsed.command == "ingest":
            result = asyncio.run(
                _ingest(
                    parsed.db,
                    parsed.source,
                    parsed.collection,
                    parsed.structured,
                    parsed.symmetric,
                )
            )
        elif parsed.command in ("normalize", "normalise"):
            result = asyncio.run(_normalize(parsed.db, parsed.collection))
        elif parsed.command == "stats":
            result = asyncio.run(_stats(parsed.db))
        else:
            result = asyncio.run(_backup(parsed.db))
    except (StoreError, ValueError, OSError) as exc:
        log.debug("Command %s failed", parsed.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(result)
    return 0


def main() -> None:
    """Console-script entry point."""
    sys.exit(dispatch(sys.argv[1:]))
