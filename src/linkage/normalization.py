"""Per-anchor weight normalization for structured linkage collections.

For every distinct ``concept_A`` value (the *anchor*) the engine finds the
highest weight among the anchor's records and rescales all of them by it,
so each anchor's strongest relationship ends at exactly ``1.00``:

1. **Enumerate** -- an unbounded term aggregation over ``concept_A``.
2. **Max** -- top record by weight; a missing record or a zero weight
   counts as ``1.0``.
3. **Skip** -- anchors whose max is exactly ``1.0`` are already normalized
   and receive no writes.
4. **Rewrite** -- the anchor's records are scrolled in pages (weight
   descending) and each gets ``format_weight(weight / max)`` through the
   bulk writer, which is flushed once the anchor is done.

Running :meth:`NormalizationEngine.normalize` a second time is a no-op:
every anchor then has a max of ``1.0``.  Negative weights are not clamped.

Only collections ingested in structured mode can be normalized; anything
else fails at the aggregation step because ``concept_A`` is not mapped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from linkage.storage import BulkSession, Storage
from linkage.triples import CONCEPT_A, WEIGHT, format_weight

log = logging.getLogger(__name__)


@dataclass
class NormalizationResult:
    """Summary of one normalization run.

    Attributes
    ----------
    collection:
        The collection that was normalized.
    anchors:
        Distinct ``concept_A`` values found.
    normalized:
        Anchors whose records were rescaled.
    skipped:
        Anchors left alone because their max weight was already ``1.0``
        (including all-zero anchors).
    updated:
        Weight updates submitted to the bulk writer.  Each rescaled
        anchor is flushed before the next one starts, so after a failure
        this can exceed what was committed by at most the failing
        anchor's updates.
    """

    collection: str
    anchors: int = 0
    normalized: int = 0
    skipped: int = 0
    updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "anchors": self.anchors,
            "normalized": self.normalized,
            "skipped": self.skipped,
            "updated": self.updated,
        }


class NormalizationEngine:
    """Rescales each anchor's weights so its maximum becomes ``1.00``.

    Parameters
    ----------
    storage:
        An initialised :class:`~linkage.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def max_weight(self, collection: str, anchor: str) -> float:
        """Highest weight among *anchor*'s records.

        Returns ``1.0`` when the anchor has no records or its top weight is
        exactly zero, so that dividing by the result is always safe and
        leaves zero weights untouched.
        """
        top = await self._storage.query_top(
            collection,
            CONCEPT_A,
            anchor,
            sort_field=WEIGHT,
            descending=True,
            size=1,
        )
        max_weight = 1.0
        if top:
            max_weight = float(top[0].source.get(WEIGHT) or 0.0)
        if max_weight == 0.0:
            max_weight = 1.0
        return max_weight

    async def normalize(self, collection: str) -> NormalizationResult:
        """Normalize every anchor in *collection*.

        Raises
        ------
        StoreError
            If the aggregation, a query, a scroll read, or a flush fails.
            Anchors rescaled before the failure are already committed and
            keep their new weights.
        """
        result = NormalizationResult(collection=collection)
        buckets = await self._storage.aggregate_terms(collection, CONCEPT_A, size=0)
        result.anchors = len(buckets)

        async with self._storage.bulk() as bulk:
            for bucket in buckets:
                anchor = bucket.key
                max_weight = await self.max_weight(collection, anchor)
                if max_weight == 1.0:
                    result.skipped += 1
                    log.debug("Anchor %r already normalized; skipping", anchor)
                    continue

                result.updated += await self._rescale_anchor(
                    bulk, collection, anchor, max_weight
                )
                result.normalized += 1

        log.info(
            "Normalized %r: %d anchors, %d rescaled, %d skipped, %d weights updated",
            collection,
            result.anchors,
            result.normalized,
            result.skipped,
            result.updated,
        )
        return result

    async def _rescale_anchor(
        self,
        bulk: BulkSession,
        collection: str,
        anchor: str,
        max_weight: float,
    ) -> int:
        """Queue ``weight / max_weight`` updates for every record of *anchor*."""
        updated = 0
        cursor = await self._storage.scroll(
            collection,
            CONCEPT_A,
            anchor,
            sort_field=WEIGHT,
            descending=True,
        )
        async with cursor:
            async for page in cursor.pages():
                for doc in page:
                    weight = float(doc.source.get(WEIGHT) or 0.0)
                    await bulk.update(
                        collection,
                        doc.id,
                        WEIGHT,
                        format_weight(weight / max_weight),
                    )
                    updated += 1

        # Each anchor is committed before the next one is read.
        await bulk.flush()
        log.debug(
            "Anchor %r: %d weights rescaled by max %.2f",
            anchor,
            updated,
            max_weight,
        )
        return updated
