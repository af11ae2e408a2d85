"""Tests for DedupIndex — id-based filtering and the verify-mode heuristic."""

from __future__ import annotations

from datetime import timedelta

from tidesync.glucose.base import Sample
from tidesync.glucose.sync.dedup import DedupIndex, external_id_set
from tidesync.glucose.tests.conftest import TEST_NOW, dexcom_sample


def _remote(external_id: str | None, minutes_ago: int) -> Sample:
    return Sample(
        value=99.0,
        timestamp=TEST_NOW - timedelta(minutes=minutes_ago),
        external_id=external_id,
        source_name="Tidepool",
    )


class TestFilterNew:
    def test_all_new_when_store_empty(self) -> None:
        candidates = [_remote("a", 5), _remote("b", 10)]
        assert DedupIndex().filter_new(candidates, []) == candidates

    def test_drops_candidates_already_present(self) -> None:
        candidates = [_remote("a", 5), _remote("b", 10), _remote("c", 15)]
        present = [_remote("b", 10)]
        result = DedupIndex().filter_new(candidates, present)
        assert [s.external_id for s in result] == ["a", "c"]

    def test_preserves_input_order(self) -> None:
        candidates = [_remote("z", 1), _remote("m", 2), _remote("a", 3)]
        result = DedupIndex().filter_new(candidates, [_remote("m", 2)])
        assert [s.external_id for s in result] == ["z", "a"]

    def test_match_is_by_id_not_timestamp(self) -> None:
        """A different id at the same instant is still new."""
        candidates = [_remote("new-id", 5)]
        present = [_remote("old-id", 5)]
        assert len(DedupIndex().filter_new(candidates, present)) == 1

    def test_candidate_without_id_is_always_new(self) -> None:
        candidates = [_remote(None, 5)]
        present = [_remote("a", 5)]
        assert DedupIndex().filter_new(candidates, present) == candidates

    def test_present_samples_without_id_match_nothing(self) -> None:
        candidates = [_remote("a", 5)]
        present = [dexcom_sample(5)]
        assert DedupIndex().filter_new(candidates, present) == candidates


class TestExternalIdSet:
    def test_skips_samples_without_id(self) -> None:
        samples = [_remote("a", 1), dexcom_sample(2), _remote("b", 3)]
        assert external_id_set(samples) == {"a", "b"}


class TestCountMissingRemote:
    def test_counts_local_samples_without_remote_twin(self) -> None:
        local = [dexcom_sample(5), dexcom_sample(10), dexcom_sample(15)]
        remote = [_remote("x", 10)]
        assert DedupIndex().count_missing_remote(local, remote) == 2

    def test_zero_when_everything_matches(self) -> None:
        local = [dexcom_sample(5)]
        remote = [_remote("x", 5)]
        assert DedupIndex().count_missing_remote(local, remote) == 0

    def test_empty_local_is_zero(self) -> None:
        assert DedupIndex().count_missing_remote([], [_remote("x", 5)]) == 0
