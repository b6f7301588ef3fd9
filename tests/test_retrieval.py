"""
Tests para el Retriever
=======================
"""

from datetime import datetime, timezone

import pytest

from tempera.errors import ValidationError
from tempera.retrieval import Retriever

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def retriever(store, embedder):
    return Retriever(store, embedder)


class TestRetrieveSearch:
    """Tests del modo búsqueda."""

    def test_returns_relevant_first(self, store, make_episode, retriever):
        relevant = store.insert(make_episode("tree-sitter ERROR nodes split first command"))
        store.insert(make_episode("docker compose healthcheck for postgres"))

        results = retriever.retrieve("ERROR node splitting in tree-sitter grammar", limit=1)

        assert [ep.id for ep in results] == [relevant]

    def test_marks_returned_episodes_as_used(self, store, make_episode, retriever):
        episode_id = store.insert(make_episode("uso registrado al recuperar"))

        results = retriever.retrieve("uso registrado", limit=5, now=NOW)

        assert results[0].use_count == 1
        assert results[0].last_used_at == NOW
        stored = store.get(episode_id)
        assert stored.use_count == 1
        assert stored.last_used_at == NOW

    def test_only_returned_episodes_are_touched(self, store, make_episode, retriever):
        store.insert(make_episode("cache invalidation after schema migration"))
        other = store.insert(make_episode("kubernetes pod eviction memory limits"))

        retriever.retrieve("cache invalidation migration", limit=1)

        assert store.get(other).use_count == 0

    def test_utility_breaks_similarity_ties(self, store, make_episode, retriever):
        store.insert(make_episode("flaky test caused by shared temp dir", minutes=0, utility=0.2))
        useful = store.insert(make_episode("flaky test caused by shared temp dir", minutes=1, utility=0.9))

        results = retriever.retrieve("flaky test shared temp dir", limit=1)

        assert results[0].id == useful

    def test_similarity_dominates_utility(self, store, make_episode, retriever):
        relevant = store.insert(make_episode("alembic autogenerate misses enum changes", utility=0.0))
        store.insert(make_episode("react hooks exhaustive deps warning", utility=1.0))

        results = retriever.retrieve("alembic autogenerate misses enum changes", limit=2)

        assert results[0].id == relevant

    def test_respects_limit(self, store, make_episode, retriever):
        for i in range(6):
            store.insert(make_episode(f"python packaging lesson number {i}", minutes=i))

        assert len(retriever.retrieve("python packaging lesson", limit=3)) == 3

    def test_empty_store_returns_empty(self, retriever):
        assert retriever.retrieve("nada guardado todavía") == []

    @pytest.mark.parametrize("query", [None, "", "   "])
    def test_query_required(self, retriever, query):
        with pytest.raises(ValidationError):
            retriever.retrieve(query)

    @pytest.mark.parametrize("limit", [0, -1])
    def test_limit_must_be_positive(self, retriever, limit):
        with pytest.raises(ValidationError):
            retriever.retrieve("algo", limit=limit)

    def test_project_filter(self, store, make_episode, retriever):
        store.insert(make_episode("connection pool exhaustion under load", project="web"))
        api = store.insert(make_episode("connection pool exhaustion under load", project="api"))

        results = retriever.retrieve("connection pool exhaustion", project="api")

        assert [ep.id for ep in results] == [api]


class TestRetrieveById:
    """Un ID de episodio también es una consulta válida."""

    def test_id_query_returns_episode(self, store, make_episode, retriever):
        episode_id = store.insert(make_episode("detalle completo por id"))
        store.insert(make_episode("otro episodio cualquiera"))

        results = retriever.retrieve(episode_id)

        assert [ep.id for ep in results] == [episode_id]
        assert results[0].use_count == 1

    def test_id_query_respects_project(self, store, make_episode, retriever):
        episode_id = store.insert(make_episode("de otro proyecto", project="web"))

        assert retriever.retrieve(episode_id, project="api") == []


class TestRetrieveAll:
    """Tests del modo listado."""

    def test_all_ignores_query_and_orders_by_recency(self, store, make_episode, retriever):
        old = store.insert(make_episode("gradle daemon memory", minutes=0, project="api"))
        new = store.insert(make_episode("unrelated to the query", minutes=20, project="api"))
        store.insert(make_episode("gradle daemon memory", minutes=40, project="web"))

        results = retriever.retrieve("gradle daemon memory", limit=10, project="api", all=True)

        assert [ep.id for ep in results] == [new, old]

    def test_all_without_query(self, store, make_episode, retriever):
        store.insert(make_episode("listar sin consulta"))
        assert len(retriever.retrieve(all=True)) == 1

    def test_all_honors_limit_and_touches(self, store, make_episode, retriever):
        ids = [store.insert(make_episode(f"episodio {i}", minutes=i)) for i in range(4)]

        results = retriever.retrieve(all=True, limit=2, now=NOW)

        assert [ep.id for ep in results] == [ids[3], ids[2]]
        assert store.get(ids[3]).use_count == 1
        assert store.get(ids[0]).use_count == 0


class TestUnscopedVisibility:
    """Visibilidad de episodios globales bajo un filtro de proyecto."""

    def test_unscoped_hidden_by_default(self, store, make_episode, retriever):
        store.insert(make_episode("retry flaky network calls with jitter"))
        scoped = store.insert(make_episode("retry flaky network calls with jitter", project="api"))

        results = retriever.retrieve("retry flaky network calls", project="api")

        assert [ep.id for ep in results] == [scoped]

    def test_unscoped_visible_when_enabled(self, make_store, make_episode, embedder):
        store = make_store(include_unscoped=True)
        retriever = Retriever(store, embedder)
        unscoped = store.insert(make_episode("retry flaky network calls with jitter"))
        scoped = store.insert(make_episode("retry flaky network calls with jitter", project="api"))
        store.insert(make_episode("retry flaky network calls with jitter", project="web"))

        results = retriever.retrieve("retry flaky network calls", project="api")
        listed = retriever.retrieve(project="api", all=True, limit=10)

        assert {ep.id for ep in results} == {scoped, unscoped}
        assert {ep.id for ep in listed} == {scoped, unscoped}
        assert all(ep.project in ("api", None) for ep in results)
