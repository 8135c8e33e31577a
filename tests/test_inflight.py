"""Tests for the in-flight tracker."""

from lmstudio_router.stats.inflight import InFlightTracker


class TestInFlightTracker:
    def test_acquire_counts_per_model(self, tracker):
        tracker.acquire("a")
        tracker.acquire("b")
        tracker.acquire("a")

        assert tracker.counts_by_model() == {"a": 2, "b": 1}
        assert tracker.count("a") == 2
        assert tracker.count("missing") == 0
        assert len(tracker) == 3

    def test_release_removes_a_single_entry(self, tracker):
        tracker.acquire("a")
        tracker.acquire("a")

        assert tracker.release("a") is True
        assert tracker.counts_by_model() == {"a": 1}

    def test_release_keeps_order_of_remaining_entries(self, tracker):
        for model_id in ["a", "b", "a", "c"]:
            tracker.acquire(model_id)

        tracker.release("a")

        assert tracker.entries() == ["b", "a", "c"]

    def test_release_without_acquire_is_a_no_op(self, tracker):
        assert tracker.release("never") is False
        assert tracker.counts_by_model() == {}

    def test_duplicate_releases_never_go_negative(self, tracker):
        tracker.acquire("a")

        results = [tracker.release("a") for _ in range(3)]

        assert results == [True, False, False]
        assert tracker.count("a") == 0
        assert tracker.counts_by_model() == {}

    def test_count_matches_acquires_minus_matched_releases(self):
        tracker = InFlightTracker()
        operations = [
            ("acquire", "a"),
            ("acquire", "b"),
            ("release", "a"),
            ("release", "a"),
            ("acquire", "a"),
            ("release", "c"),
            ("acquire", "b"),
            ("release", "b"),
        ]
        expected = {}
        for op, model_id in operations:
            if op == "acquire":
                tracker.acquire(model_id)
                expected[model_id] = expected.get(model_id, 0) + 1
            else:
                tracker.release(model_id)
                if expected.get(model_id):
                    expected[model_id] -= 1
            assert all(count >= 0 for count in tracker.counts_by_model().values())

        assert tracker.counts_by_model() == {k: v for k, v in expected.items() if v}

    def test_prune_unlisted_drops_every_stale_entry(self, tracker):
        for model_id in ["x", "y", "x", "z"]:
            tracker.acquire(model_id)

        removed = tracker.prune_unlisted(["y", "z"])

        assert removed == 2
        assert tracker.counts_by_model() == {"y": 1, "z": 1}
        assert "x" not in tracker.counts_by_model()

    def test_prune_with_nothing_listed_empties_tracker(self, tracker):
        tracker.acquire("a")

        assert tracker.prune_unlisted([]) == 1
        assert tracker.entries() == []

    def test_entries_returns_a_copy(self, tracker):
        tracker.acquire("a")

        tracker.entries().append("b")

        assert tracker.entries() == ["a"]
