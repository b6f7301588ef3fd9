"""
Tests para la propagación de utilidad
=====================================

Difusión por similitud desde episodios valorados, decaimiento de
episodios sin feedback y crédito temporal.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from tempera.errors import BatchPassError, StoreUnavailable
from tempera.feedback import FeedbackTracker
from tempera.models import UTILITY_BASELINE, Episode
from tempera.propagation import UtilityPropagator

SOURCE = "tree-sitter ERROR nodes split first command"
NEIGHBOR = "tree-sitter ERROR nodes split first command in grammar"
UNRELATED = "docker compose healthcheck waits for postgres"


@pytest.fixture
def propagator(store):
    return UtilityPropagator(store)


@pytest.fixture
def rated_cluster(store, make_episode):
    """Fuente valorada como útil, un vecino cercano y un episodio no relacionado."""
    source = store.insert(make_episode(SOURCE, minutes=0, use_count=1))
    neighbor = store.insert(make_episode(NEIGHBOR, minutes=1))
    unrelated = store.insert(make_episode(UNRELATED, minutes=2))
    FeedbackTracker(store).record_feedback([source], helpful=True)
    return source, neighbor, unrelated


class TestSimilarityPropagation:

    def test_neighbor_gets_bounded_positive_delta(self, store, propagator, rated_cluster):
        source, neighbor, unrelated = rated_cluster

        result = propagator.propagate()

        delta = store.get(neighbor).utility - UTILITY_BASELINE
        assert 0 < delta <= propagator.max_injection
        assert store.get(unrelated).utility == UTILITY_BASELINE
        assert result.sources == 1
        assert result.adjusted == 1
        assert result.processed == 2
        assert not result.interrupted

    def test_rated_source_untouched(self, store, propagator, rated_cluster):
        source, _, _ = rated_cluster
        before = store.get(source).utility

        propagator.propagate()

        assert store.get(source).utility == before

    def test_negative_feedback_pushes_neighbors_down(self, store, make_episode, propagator):
        source = store.insert(make_episode(SOURCE, use_count=1))
        neighbor = store.insert(make_episode(NEIGHBOR, minutes=1))
        FeedbackTracker(store).record_feedback([source], helpful=False)

        propagator.propagate()

        assert store.get(neighbor).utility < UTILITY_BASELINE

    def test_below_min_similarity_not_affected(self, store, make_episode):
        propagator = UtilityPropagator(store, propagation_min_similarity=0.99)
        source = store.insert(make_episode(SOURCE, use_count=1))
        neighbor = store.insert(make_episode(NEIGHBOR, minutes=1))
        FeedbackTracker(store).record_feedback([source], helpful=True)

        result = propagator.propagate()

        assert store.get(neighbor).utility == UTILITY_BASELINE
        assert result.adjusted == 0

    def test_repeated_passes_converge(self, store, propagator, rated_cluster):
        """Las pasadas repetidas convergen en lugar de crecer sin límite."""
        _, neighbor, unrelated = rated_cluster

        propagator.propagate()
        first_delta = store.get(neighbor).utility - UTILITY_BASELINE
        for _ in range(60):
            propagator.propagate()

        expected = UTILITY_BASELINE + first_delta / propagator.decay
        assert store.get(neighbor).utility == pytest.approx(expected, abs=1e-3)
        assert store.get(unrelated).utility == UTILITY_BASELINE

        before = store.get(neighbor).utility
        propagator.propagate()
        assert store.get(neighbor).utility == pytest.approx(before, abs=1e-4)

    def test_unrated_utility_decays_to_baseline(self, store, make_episode, propagator):
        """Sin fuentes valoradas, la utilidad heredada vuelve a la línea base."""
        episode_id = store.insert(make_episode("heredó utilidad alta", utility=0.8))

        propagator.propagate()
        assert store.get(episode_id).utility == pytest.approx(
            UTILITY_BASELINE + (1 - propagator.decay) * 0.3
        )

        for _ in range(80):
            propagator.propagate()
        assert store.get(episode_id).utility == pytest.approx(UTILITY_BASELINE, abs=1e-4)

    def test_empty_store(self, propagator):
        result = propagator.propagate()
        assert result.adjusted == 0
        assert result.processed == 0
        assert result.sources == 0

    def test_project_scope(self, store, make_episode, propagator):
        source = store.insert(make_episode(SOURCE, use_count=1, project="api"))
        other = store.insert(make_episode(NEIGHBOR, minutes=1, project="web"))
        FeedbackTracker(store).record_feedback([source], helpful=True)

        result = propagator.propagate(project="api")

        assert store.get(other).utility == UTILITY_BASELINE
        assert result.processed == 0


class TestTemporalCredit:
    """Crédito temporal dentro de un proyecto."""

    def test_success_boosts_preceding_episodes(self, store, make_episode, propagator):
        earlier = store.insert(make_episode("read the migration log first", minutes=0,
                                            project="api", outcome="partial"))
        store.insert(make_episode("pin the alembic revision", minutes=10,
                                  project="api", outcome="success"))

        propagator.propagate(temporal=True)

        assert store.get(earlier).utility == pytest.approx(
            UTILITY_BASELINE + propagator.temporal_boost
        )

    def test_failure_penalizes_preceding_episodes(self, store, make_episode, propagator):
        earlier = store.insert(make_episode("skip the lockfile update", minutes=0,
                                            project="api", outcome="partial"))
        store.insert(make_episode("deploy broke production", minutes=10,
                                  project="api", outcome="failure"))

        propagator.propagate(temporal=True)

        assert store.get(earlier).utility == pytest.approx(
            UTILITY_BASELINE - propagator.temporal_penalty
        )

    def test_rated_predecessor_keeps_feedback_utility(self, store, make_episode, propagator):
        earlier = store.insert(make_episode("read the migration log first", minutes=0,
                                            project="api", outcome="partial", use_count=1))
        store.insert(make_episode("pin the alembic revision", minutes=10,
                                  project="api", outcome="success"))
        FeedbackTracker(store).record_feedback([earlier], helpful=True)
        rated = store.get(earlier).utility

        propagator.propagate(temporal=True)

        assert store.get(earlier).utility == rated

    def test_without_temporal_flag_no_credit(self, store, make_episode, propagator):
        earlier = store.insert(make_episode("read the migration log first", minutes=0,
                                            project="api", outcome="partial"))
        store.insert(make_episode("pin the alembic revision", minutes=10,
                                  project="api", outcome="success"))

        result = propagator.propagate(temporal=False)

        assert store.get(earlier).utility == UTILITY_BASELINE
        assert result.temporal is False

    def test_credit_is_discounted_by_distance(self, propagator):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        episodes = [
            Episode(id=f"e{i}", summary=f"paso {i}", task_type="debug", outcome="partial",
                    project="api", created_at=base + timedelta(minutes=i))
            for i in range(3)
        ]
        episodes.append(Episode(id="ok", summary="resuelto", task_type="bugfix", outcome="success",
                                project="api", created_at=base + timedelta(minutes=5)))

        credit = propagator.compute_temporal_credit(episodes)

        boost = propagator.temporal_boost
        discount = propagator.temporal_discount
        assert credit["e2"] == pytest.approx(boost)
        assert credit["e1"] == pytest.approx(boost * discount)
        assert credit["e0"] == pytest.approx(boost * discount ** 2)

    def test_credit_respects_window_and_project(self, propagator):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        episodes = [
            Episode(id="old", summary="hace dos días", task_type="debug", outcome="partial",
                    project="api", created_at=base),
            Episode(id="other", summary="otro proyecto", task_type="debug", outcome="partial",
                    project="web", created_at=base + timedelta(hours=47)),
            Episode(id="ok", summary="resuelto", task_type="bugfix", outcome="success",
                    project="api", created_at=base + timedelta(hours=48)),
        ]

        assert propagator.compute_temporal_credit(episodes) == {}


class TestBatchBehaviour:

    def test_cancelled_pass_applies_nothing(self, store, make_episode, propagator):
        episode_id = store.insert(make_episode("heredó utilidad alta", utility=0.8))
        cancel = threading.Event()
        cancel.set()

        result = propagator.propagate(cancel_event=cancel)

        assert result.interrupted
        assert result.processed == 0
        assert store.get(episode_id).utility == 0.8

    def test_failure_mid_pass_raises_batch_error(self, store, make_episode, propagator, monkeypatch):
        store.insert(make_episode("heredó utilidad alta", utility=0.8))

        def broken(*args, **kwargs):
            raise StoreUnavailable("SQLite no disponible")

        monkeypatch.setattr(store, "update_episode", broken)

        with pytest.raises(BatchPassError) as exc_info:
            propagator.propagate()
        assert exc_info.value.processed == 0
        assert isinstance(exc_info.value.cause, StoreUnavailable)

    def test_cancel_during_planning_stops_searches(self, store, propagator, rated_cluster, monkeypatch):
        _, neighbor, _ = rated_cluster
        cancel = threading.Event()
        searches = []
        original_search = store.search

        def search_then_cancel(*args, **kwargs):
            searches.append(args)
            cancel.set()
            return original_search(*args, **kwargs)

        monkeypatch.setattr(store, "search", search_then_cancel)
        # Segunda fuente: sin cancelación haría otra búsqueda
        FeedbackTracker(store).record_feedback([neighbor], helpful=False)

        result = propagator.propagate(cancel_event=cancel)

        assert len(searches) == 1
        assert result.interrupted
        assert result.processed == 0
        assert result.adjusted == 0

    def test_failure_while_planning_raises_batch_error(self, store, propagator, rated_cluster, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreUnavailable("Timeout de 5.0s en index.knn")

        monkeypatch.setattr(store, "search", broken)

        with pytest.raises(BatchPassError) as exc_info:
            propagator.propagate()
        assert exc_info.value.processed == 0
        assert isinstance(exc_info.value.cause, StoreUnavailable)

    def test_episode_rated_during_pass_is_not_overwritten(self):
        rated = Episode(id="x", summary="valorado", task_type="bugfix", outcome="success",
                        utility=0.7, use_count=1, helpful_count=1, feedback_count=1)
        assert UtilityPropagator._retarget(rated, 0.9, 0.5) is None

    def test_retarget_applies_delta_over_current_value(self):
        current = Episode(id="x", summary="cambió", task_type="bugfix", outcome="success", utility=0.6)
        updated = UtilityPropagator._retarget(current, 0.55, 0.5)
        assert updated.utility == pytest.approx(0.65)
