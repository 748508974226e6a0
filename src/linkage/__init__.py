"""linkage -- weighted term-linkage store with per-anchor normalization.

Quick start::

    from linkage import IngestionPipeline, LinkageTriple, NormalizationEngine, Storage

    async def main():
        async with Storage() as storage:
            triples = [LinkageTriple("cat", "dog", 0.8), LinkageTriple("cat", "fish", 0.4)]
            await IngestionPipeline(storage).ingest(triples, "similarity", structured=True)
            await NormalizationEngine(storage).normalize("similarity")

For lower-level access, import from submodules::

    from linkage.storage import BulkSession, ScrollCursor, FieldSpec
    from linkage.triples import format_weight
"""

from __future__ import annotations

__version__ = "0.1.0"

from linkage.ingestion import IngestionPipeline, IngestResult
from linkage.normalization import NormalizationEngine, NormalizationResult
from linkage.storage import ScrollExpiredError, Storage, StoreError
from linkage.triples import LinkageTriple, format_weight

__all__ = [
    "__version__",
    "IngestionPipeline",
    "IngestResult",
    "LinkageTriple",
    "NormalizationEngine",
    "NormalizationResult",
    "ScrollExpiredError",
    "Storage",
    "StoreError",
    "format_weight",
]
