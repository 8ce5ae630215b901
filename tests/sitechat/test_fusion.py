"""
Tests for merging and fusing dense and sparse hit lists.

Covers:
- Merge completeness (every id from either list appears exactly once)
- Sparse-only hits without stored metadata are dropped
- Weighted formula and min-max normalization
- Reciprocal rank fusion
- Score bounds and stable tie-breaking
"""

import pytest

from sitechat.fusion import (
    DenseMatch,
    DualMatch,
    ReciprocalRankFusion,
    SparseMatch,
    WeightedScoreFusion,
    merge_hits,
    min_max_normalize,
)
from sitechat.models import DenseHit, SparseHit


@pytest.fixture
def chunks(make_chunk):
    return {i: make_chunk(i, f"chunk number {i}") for i in range(1, 7)}


def dense(chunks, *pairs):
    return [DenseHit(id=i, score=s, chunk=chunks[i]) for i, s in pairs]


def sparse(*pairs):
    return [SparseHit(id=i, score=s) for i, s in pairs]


class TestMinMaxNormalize:
    def test_scales_to_unit_interval(self):
        assert min_max_normalize([2.0, 4.0, 3.0]) == [0.0, 1.0, 0.5]

    def test_equal_values_map_to_one(self):
        assert min_max_normalize([0.7, 0.7]) == [1.0, 1.0]
        assert min_max_normalize([3.2]) == [1.0]

    def test_empty(self):
        assert min_max_normalize([]) == []


class TestMergeHits:
    def test_every_id_appears_once(self, chunks):
        matches = merge_hits(
            dense(chunks, (1, 0.9), (2, 0.8), (3, 0.5)),
            sparse((3, 4.0), (4, 2.0), (1, 1.0)),
            {4: chunks[4]},
        )

        assert [m.chunk.id for m in matches] == [1, 2, 3, 4]
        assert isinstance(matches[0], DualMatch)
        assert isinstance(matches[1], DenseMatch)
        assert isinstance(matches[2], DualMatch)
        assert isinstance(matches[3], SparseMatch)
        assert matches[2].sparse_rank == 0
        assert matches[3].sparse_rank == 1

    def test_sparse_only_without_metadata_dropped(self, chunks):
        matches = merge_hits(dense(chunks, (1, 0.9)), sparse((5, 3.0), (6, 1.0)), {6: chunks[6]})
        assert [m.chunk.id for m in matches] == [1, 6]

    def test_duplicate_ids_collapse(self, chunks):
        matches = merge_hits(
            dense(chunks, (1, 0.9), (1, 0.4)),
            sparse((2, 2.0), (2, 1.0)),
            {2: chunks[2]},
        )
        assert [m.chunk.id for m in matches] == [1, 2]
        assert matches[0].semantic_score == 0.9
        assert matches[1].bm25_score == 2.0


class TestWeightedScoreFusion:
    def test_formula(self, chunks):
        matches = merge_hits(
            dense(chunks, (1, 0.8), (2, 0.6)),
            sparse((2, 6.0), (3, 2.0)),
            {3: chunks[3]},
        )

        candidates = WeightedScoreFusion(semantic_weight=0.7).fuse(matches)
        by_id = {c.id: c for c in candidates}

        # bm25 normalized over {6.0, 2.0}: chunk 2 -> 1.0, chunk 3 -> 0.0
        assert by_id[1].fused_score == pytest.approx(0.7 * 0.8)
        assert by_id[2].fused_score == pytest.approx(0.7 * 0.6 + 0.3 * 1.0)
        assert by_id[3].fused_score == pytest.approx(0.0)
        assert by_id[2].bm25_score == 1.0
        assert by_id[1].bm25_score == 0.0
        assert by_id[3].semantic_score == 0.0
        assert [c.id for c in candidates] == [2, 1, 3]

    def test_single_sparse_score_normalizes_to_one(self, chunks):
        candidates = WeightedScoreFusion().fuse(
            merge_hits(dense(chunks, (1, 0.5)), sparse((1, 0.2)))
        )
        assert candidates[0].bm25_score == 1.0
        assert candidates[0].fused_score == pytest.approx(0.7 * 0.5 + 0.3)

    def test_scores_bounded(self, chunks):
        candidates = WeightedScoreFusion(semantic_weight=1.0).fuse(
            merge_hits(dense(chunks, (1, 1.0), (2, 0.0)), sparse((1, 9.0), (2, 1.0)))
        )
        for c in candidates:
            assert 0.0 <= c.fused_score <= 1.0

    def test_ties_keep_dense_rank_order(self, chunks):
        candidates = WeightedScoreFusion().fuse(
            merge_hits(dense(chunks, (3, 0.5), (1, 0.5), (2, 0.5)), [])
        )
        assert [c.id for c in candidates] == [3, 1, 2]

    def test_candidate_shape(self, chunks):
        candidate = WeightedScoreFusion().fuse(merge_hits(dense(chunks, (1, 0.9)), []))[0]
        assert candidate.text == "chunk number 1"
        assert candidate.url == "https://example.com/page-1"
        assert candidate.title == "Page"
        assert candidate.score == candidate.fused_score
        assert set(candidate.metadata) == {"section_heading", "chunk_index", "total_chunks"}

    @pytest.mark.parametrize("weight", [-0.1, 1.5])
    def test_invalid_weight(self, weight):
        with pytest.raises(ValueError):
            WeightedScoreFusion(semantic_weight=weight)

    def test_empty(self):
        assert WeightedScoreFusion().fuse([]) == []


class TestReciprocalRankFusion:
    def test_dual_match_ranks_first(self, chunks):
        matches = merge_hits(
            dense(chunks, (1, 0.9), (2, 0.8)),
            sparse((2, 5.0), (3, 1.0)),
            {3: chunks[3]},
        )

        candidates = ReciprocalRankFusion(k=60).fuse(matches)

        # raw: 1 -> 1/61, 2 -> 1/62 + 1/61, 3 -> 1/62
        assert [c.id for c in candidates] == [2, 1, 3]
        assert candidates[0].fused_score == pytest.approx(1.0)
        assert candidates[-1].fused_score == pytest.approx(0.0)
        low, high = 1 / 62, 1 / 62 + 1 / 61
        assert candidates[1].fused_score == pytest.approx((1 / 61 - low) / (high - low))

    def test_equal_raw_scores_all_one(self, chunks):
        candidates = ReciprocalRankFusion().fuse(
            merge_hits(dense(chunks, (1, 0.2)), sparse((2, 3.0)), {2: chunks[2]})
        )
        assert [c.fused_score for c in candidates] == [1.0, 1.0]
        assert [c.id for c in candidates] == [1, 2]

    def test_semantic_score_kept_for_reference(self, chunks):
        candidates = ReciprocalRankFusion().fuse(merge_hits(dense(chunks, (1, 0.42)), []))
        assert candidates[0].semantic_score == 0.42

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            ReciprocalRankFusion(k=0)
