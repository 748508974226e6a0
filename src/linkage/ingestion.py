"""Bulk ingestion of linkage triples into a store collection.

Ingestion is destructive: the target collection is emptied before anything
is written, so every run rebuilds it from the triples it is given.

Usage::

    from linkage.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(storage)
    result = await pipeline.ingest(triples, "term_similarity", structured=True, symmetric=True)
    print(result.records)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from linkage.storage import FieldSpec, Storage
from linkage.triples import CONCEPT_A, CONCEPT_B, WEIGHT, LinkageTriple

log = logging.getLogger(__name__)

STRUCTURED_MAPPING: dict[str, FieldSpec] = {
    CONCEPT_A: FieldSpec("keyword", exact_match=True),
    CONCEPT_B: FieldSpec("keyword", exact_match=True),
    WEIGHT: FieldSpec("double", exact_match=False),
}
"""Field mapping applied to collections ingested in structured mode."""


@dataclass
class IngestResult:
    """Summary of one ingestion run.

    Attributes
    ----------
    collection:
        The collection that was rebuilt.
    triples:
        Number of input triples consumed.
    records:
        Number of records written (twice *triples* for symmetric runs).
    structured, symmetric:
        The modes the run used.
    """

    collection: str
    triples: int = 0
    records: int = 0
    structured: bool = False
    symmetric: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "triples": self.triples,
            "records": self.records,
            "structured": self.structured,
            "symmetric": self.symmetric,
        }


class IngestionPipeline:
    """Writes linkage triples to a collection through the bulk writer.

    Parameters
    ----------
    storage:
        An initialised :class:`~linkage.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def add_mapping(self, collection: str) -> None:
        """(Re-)establish the structured mapping on *collection*.

        ``concept_A`` and ``concept_B`` become exact-match keyword fields,
        which per-anchor aggregation and filtering rely on.
        """
        await self._storage.set_schema(collection, STRUCTURED_MAPPING)

    async def ingest(
        self,
        triples: Iterable[LinkageTriple] | None,
        collection: str,
        structured: bool = False,
        symmetric: bool = False,
    ) -> IngestResult:
        """Replace the contents of *collection* with *triples*.

        Parameters
        ----------
        triples:
            Triples in the order they should be written.  ``None`` or an
            empty sequence leaves the collection cleared and empty.
        collection:
            Target collection.  Always cleared first.
        structured:
            Write ``concept_A``/``concept_B`` records (and apply their
            mapping) instead of flat ``keywords`` records.
        symmetric:
            Also write the mirrored ``B -> A`` record for every triple.
            Only honoured together with *structured*.

        Raises
        ------
        StoreError
            If clearing, mapping, or flushing fails.  Batches flushed
            before the failure are not rolled back.
        """
        if symmetric and not structured:
            log.debug(
                "Symmetric ingestion requested without structured mode for %r; ignoring",
                collection,
            )
            symmetric = False

        result = IngestResult(
            collection=collection,
            structured=structured,
            symmetric=symmetric,
        )

        await self._storage.clear_collection(collection)
        if structured:
            await self.add_mapping(collection)

        if not triples:
            log.info("No triples to ingest into %r", collection)
            return result

        async with self._storage.bulk() as bulk:
            for triple in triples:
                for record in triple.to_records(structured, symmetric):
                    await bulk.index(collection, record)
                    result.records += 1
                result.triples += 1

        log.info(
            "Ingested %d triples as %d records into %r (structured=%s, symmetric=%s)",
            result.triples,
            result.records,
            collection,
            structured,
            symmetric,
        )
        return result
