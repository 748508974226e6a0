"""Tests for per-anchor weight normalization."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from linkage.ingestion import IngestionPipeline
from linkage.normalization import NormalizationEngine, NormalizationResult
from linkage.storage import ScrollExpiredError, Storage, StoreError
from linkage.triples import LinkageTriple

from tests.conftest import insert_record, weights_by_pair


@pytest.fixture
def engine(storage: Storage) -> NormalizationEngine:
    return NormalizationEngine(storage)


async def _ingest(storage: Storage, triples: list[LinkageTriple], symmetric: bool = False) -> None:
    await IngestionPipeline(storage).ingest(triples, "t", structured=True, symmetric=symmetric)


async def _count_writes(storage: Storage) -> list[int]:
    """Patch the bulk writer so the returned list collects every flushed batch size."""
    sizes: list[int] = []
    real_apply = storage._apply_ops

    async def recording_apply(ops):
        sizes.append(len(ops))
        await real_apply(ops)

    storage._apply_ops = recording_apply  # type: ignore[method-assign]
    return sizes


# -----------------------------------------------------------------------
# 1. max_weight
# -----------------------------------------------------------------------


class TestMaxWeight:
    async def test_returns_top_weight(self, storage: Storage, engine: NormalizationEngine) -> None:
        await _ingest(storage, [LinkageTriple("cat", "dog", 0.8), LinkageTriple("cat", "fish", 0.4)])
        assert await engine.max_weight("t", "cat") == 0.8

    async def test_missing_anchor_is_one(self, storage: Storage, engine: NormalizationEngine) -> None:
        await _ingest(storage, [LinkageTriple("cat", "dog", 0.8)])
        assert await engine.max_weight("t", "emu") == 1.0

    async def test_zero_top_weight_is_one(self, storage: Storage, engine: NormalizationEngine) -> None:
        await _ingest(storage, [LinkageTriple("cat", "dog", 0.0)])
        assert await engine.max_weight("t", "cat") == 1.0

    async def test_negative_max_is_not_clamped(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("cat", "dog", -0.5)])
        assert await engine.max_weight("t", "cat") == -0.5


# -----------------------------------------------------------------------
# 2. normalize
# -----------------------------------------------------------------------


class TestNormalize:
    async def test_ties_at_max_both_become_one(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [
                LinkageTriple("cat", "dog", 0.8),
                LinkageTriple("cat", "fish", 0.4),
                LinkageTriple("cat", "bird", 0.8),
            ],
        )
        result = await engine.normalize("t")

        assert result == NormalizationResult("t", anchors=1, normalized=1, skipped=0, updated=3)
        assert await weights_by_pair(storage, "t") == {
            ("cat", "dog"): 1.0,
            ("cat", "fish"): 0.5,
            ("cat", "bird"): 1.0,
        }

    async def test_each_anchor_scaled_independently(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [
                LinkageTriple("cat", "dog", 0.5),
                LinkageTriple("cat", "fish", 0.25),
                LinkageTriple("sea", "ocean", 2.0),
                LinkageTriple("sea", "lake", 0.5),
            ],
        )
        await engine.normalize("t")
        assert await weights_by_pair(storage, "t") == {
            ("cat", "dog"): 1.0,
            ("cat", "fish"): 0.5,
            ("sea", "ocean"): 1.0,
            ("sea", "lake"): 0.25,
        }

    async def test_symmetric_records_normalized_per_direction(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [LinkageTriple("cat", "dog", 0.6), LinkageTriple("dog", "bone", 0.3)],
            symmetric=True,
        )
        await engine.normalize("t")
        weights = await weights_by_pair(storage, "t")
        assert weights[("cat", "dog")] == 1.0
        assert weights[("dog", "cat")] == 1.0
        assert weights[("dog", "bone")] == 0.5
        assert weights[("bone", "dog")] == 1.0

    async def test_results_rounded_to_two_places(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.9), LinkageTriple("a", "c", 0.3)])
        await engine.normalize("t")
        assert (await weights_by_pair(storage, "t"))[("a", "c")] == 0.33

    async def test_max_is_one_for_every_anchor(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        triples = [
            LinkageTriple(f"anchor{i % 7}", f"term{i}", ((i * 37) % 100) / 10 + 0.1)
            for i in range(300)
        ]
        await _ingest(storage, triples)
        await engine.normalize("t")

        best: dict[str, float] = {}
        for (anchor, _), weight in (await weights_by_pair(storage, "t")).items():
            best[anchor] = max(best.get(anchor, 0.0), weight)
        assert best == {f"anchor{i}": 1.0 for i in range(7)}

    async def test_anchor_larger_than_a_scroll_page(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        triples = [LinkageTriple("hub", f"t{i}", 2.0) for i in range(250)]
        await _ingest(storage, triples)
        result = await engine.normalize("t")

        assert result.updated == 250
        assert set((await weights_by_pair(storage, "t")).values()) == {1.0}

    async def test_scroll_released_after_each_anchor(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.5), LinkageTriple("c", "d", 0.5)])
        await engine.normalize("t")
        rows = await storage.execute("SELECT COUNT(*) AS cnt FROM scroll_contexts")
        assert rows[0]["cnt"] == 0


class TestSkipping:
    async def test_already_normalized_anchor_gets_no_writes(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 1.0), LinkageTriple("a", "c", 0.3)])
        sizes = await _count_writes(storage)

        result = await engine.normalize("t")

        assert result.skipped == 1
        assert result.updated == 0
        assert sizes == []

    async def test_zero_weight_anchor_is_skipped(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.0)])
        sizes = await _count_writes(storage)

        result = await engine.normalize("t")

        assert result.skipped == 1
        assert sizes == []
        assert await weights_by_pair(storage, "t") == {("a", "b"): 0.0}

    async def test_zero_weights_stay_zero(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.4), LinkageTriple("a", "c", 0.0)])
        await engine.normalize("t")
        assert await weights_by_pair(storage, "t") == {("a", "b"): 1.0, ("a", "c"): 0.0}

    async def test_second_run_is_a_fixed_point(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [
                LinkageTriple("cat", "dog", 0.7),
                LinkageTriple("cat", "fish", 0.2),
                LinkageTriple("sea", "ocean", 0.0),
            ],
        )
        await engine.normalize("t")
        first = await weights_by_pair(storage, "t")

        result = await engine.normalize("t")

        assert await weights_by_pair(storage, "t") == first
        assert result.updated == 0
        assert result.skipped == result.anchors == 2


class TestEdgeCases:
    async def test_empty_collection_is_a_no_op(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await IngestionPipeline(storage).ingest([], "t", structured=True)
        result = await engine.normalize("t")
        assert result == NormalizationResult("t")
        assert await storage.count("t") == 0

    async def test_flat_collection_cannot_be_normalized(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await IngestionPipeline(storage).ingest([LinkageTriple("a", "b", 0.5)], "t")
        with pytest.raises(StoreError) as excinfo:
            await engine.normalize("t")
        assert excinfo.value.stage == "aggregate"

    async def test_record_without_weight_treated_as_zero(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.5)])
        await insert_record(storage, "t", {"concept_A": "a", "concept_B": "c"})
        await engine.normalize("t")
        assert await weights_by_pair(storage, "t") == {("a", "b"): 1.0, ("a", "c"): 0.0}

    async def test_null_weight_treated_as_zero(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(storage, [LinkageTriple("a", "b", 0.5)])
        await insert_record(storage, "t", {"concept_A": "a", "concept_B": "c", "weight": None})
        await engine.normalize("t")
        assert await weights_by_pair(storage, "t") == {("a", "b"): 1.0, ("a", "c"): 0.0}

    async def test_null_top_weight_is_one(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await IngestionPipeline(storage).add_mapping("t")
        await insert_record(storage, "t", {"concept_A": "a", "concept_B": "c", "weight": None})
        assert await engine.max_weight("t", "a") == 1.0


class TestFailures:
    async def test_scroll_failure_keeps_earlier_anchors(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        # Two records per anchor so "a" sorts first in the aggregation.
        await _ingest(
            storage,
            [
                LinkageTriple("a", "x", 0.5),
                LinkageTriple("a", "y", 0.25),
                LinkageTriple("b", "x", 0.5),
            ],
        )
        real_scroll = storage.scroll
        calls = 0

        async def failing_scroll(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise ScrollExpiredError("gone", collection="t", stage="scroll")
            return await real_scroll(*args, **kwargs)

        with patch.object(storage, "scroll", side_effect=failing_scroll):
            with pytest.raises(ScrollExpiredError):
                await engine.normalize("t")

        weights = await weights_by_pair(storage, "t")
        # "a" finished before the failure and stays committed.
        assert weights[("a", "x")] == 1.0
        assert weights[("a", "y")] == 0.5
        assert weights[("b", "x")] == 0.5

    async def test_query_failure_keeps_earlier_anchors(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [
                LinkageTriple("a", "x", 0.5),
                LinkageTriple("a", "y", 0.25),
                LinkageTriple("b", "x", 0.5),
            ],
        )
        real_max = engine.max_weight

        async def failing_max(collection, anchor):
            if anchor == "b":
                raise StoreError("connection reset", collection=collection, stage="query")
            return await real_max(collection, anchor)

        engine.max_weight = failing_max  # type: ignore[method-assign]
        with pytest.raises(StoreError):
            await engine.normalize("t")

        weights = await weights_by_pair(storage, "t")
        assert weights[("a", "x")] == 1.0
        assert weights[("a", "y")] == 0.5
        assert weights[("b", "x")] == 0.5

    async def test_each_rescaled_anchor_is_flushed_separately(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        await _ingest(
            storage,
            [
                LinkageTriple("a", "x", 0.5),
                LinkageTriple("a", "y", 0.25),
                LinkageTriple("b", "x", 0.5),
            ],
        )
        sizes = await _count_writes(storage)
        await engine.normalize("t")
        assert sizes == [2, 1]

    async def test_aggregation_failure_propagates(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        error = StoreError("timeout", collection="t", stage="aggregate")
        with patch.object(Storage, "aggregate_terms", AsyncMock(side_effect=error)):
            with pytest.raises(StoreError, match="timeout"):
                await engine.normalize("t")

    async def test_flushed_anchors_survive_later_failure(
        self, storage: Storage, engine: NormalizationEngine
    ) -> None:
        triples = [LinkageTriple("a", f"t{i}", 0.5) for i in range(1200)]
        triples.append(LinkageTriple("b", "x", 0.5))
        await _ingest(storage, triples)

        real_max = engine.max_weight

        async def failing_max(collection, anchor):
            if anchor == "b":
                raise StoreError("connection reset", collection=collection, stage="query")
            return await real_max(collection, anchor)

        engine.max_weight = failing_max  # type: ignore[method-assign]
        with pytest.raises(StoreError):
            await engine.normalize("t")

        weights = await weights_by_pair(storage, "t")
        normalized = sum(1 for (a, _), w in weights.items() if a == "a" and w == 1.0)
        assert normalized == 1200
