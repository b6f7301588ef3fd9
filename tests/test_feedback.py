"""
Tests para el FeedbackTracker
=============================
"""

import pytest

from tempera.feedback import FeedbackTracker


@pytest.fixture
def tracker(store):
    return FeedbackTracker(store, learning_rate=0.2)


class TestRecordFeedback:

    def test_helpful_raises_utility(self, store, make_episode, tracker):
        episode_id = store.insert(make_episode("útil", use_count=1))

        result = tracker.record_feedback([episode_id], helpful=True)

        episode = store.get(episode_id)
        assert result.updated == [episode_id]
        assert result.skipped == 0
        assert episode.utility == pytest.approx(0.6)
        assert episode.helpful_count == 1
        assert episode.feedback_count == 1
        assert episode.use_count == 1

    def test_not_helpful_lowers_utility(self, store, make_episode, tracker):
        episode_id = store.insert(make_episode("irrelevante", use_count=1))

        tracker.record_feedback([episode_id], helpful=False)

        episode = store.get(episode_id)
        assert episode.utility == pytest.approx(0.4)
        assert episode.helpful_count == 0
        assert episode.feedback_count == 1

    def test_unknown_ids_are_skipped(self, store, make_episode, tracker):
        episode_id = store.insert(make_episode("conocido", use_count=1))

        result = tracker.record_feedback(["fantasma", episode_id], helpful=True)

        assert result.updated == [episode_id]
        assert result.skipped_ids == ["fantasma"]
        assert result.skipped == 1

    def test_repeated_id_counts_once(self, store, make_episode, tracker):
        episode_id = store.insert(make_episode("repetido", use_count=1))

        tracker.record_feedback([episode_id, episode_id], helpful=True)

        assert store.get(episode_id).helpful_count == 1

    def test_feedback_does_not_count_as_use(self, store, make_episode, tracker):
        episode_id = store.insert(make_episode("ya recuperado", use_count=3))

        tracker.record_feedback([episode_id], helpful=False)

        assert store.get(episode_id).use_count == 3

    def test_never_retrieved_episode_keeps_counters_consistent(self, store, make_episode, tracker):
        """El feedback útil sobre un episodio nunca recuperado no rompe helpful <= use."""
        episode_id = store.insert(make_episode("nunca recuperado"))

        tracker.record_feedback([episode_id], helpful=True)

        episode = store.get(episode_id)
        assert episode.helpful_count == 1
        assert episode.use_count == 1

    def test_utility_stays_bounded(self, store, make_episode, tracker):
        up = store.insert(make_episode("siempre útil", use_count=1))
        down = store.insert(make_episode("nunca útil", use_count=1))

        for _ in range(60):
            tracker.record_feedback([up], helpful=True)
            tracker.record_feedback([down], helpful=False)

        assert 0.0 <= store.get(down).utility < 0.01
        assert 0.99 < store.get(up).utility <= 1.0

    def test_empty_ids(self, tracker):
        result = tracker.record_feedback([], helpful=True)
        assert result.updated == []
        assert result.skipped == 0
