"""
Tests para los modelos de datos
===============================
"""

import pytest
from pydantic import ValidationError

from tempera.models import (
    UTILITY_BASELINE,
    DuplicateCluster,
    Episode,
    ErrorResolution,
    FeedbackResult,
    Outcome,
    ReviewAction,
    ReviewReport,
    TaskType,
    clamp_utility,
)


class TestEpisode:
    """Tests para el modelo Episode."""

    def test_create_minimal_episode(self):
        """Un episodio mínimo arranca en la línea base y sin uso."""
        episode = Episode(summary="Cerrar el cursor antes de la conexión", task_type="bugfix", outcome="success")

        assert episode.id is None
        assert episode.task_type == TaskType.BUGFIX
        assert episode.outcome == Outcome.SUCCESS
        assert episode.utility == UTILITY_BASELINE
        assert episode.use_count == 0
        assert episode.helpful_count == 0
        assert episode.feedback_count == 0
        assert episode.last_used_at is None
        assert episode.created_at.tzinfo is not None
        assert not episode.is_rated

    def test_summary_is_stripped(self):
        episode = Episode(summary="  insight  \n", task_type="docs", outcome="partial")
        assert episode.summary == "insight"

    def test_blank_summary_rejected(self):
        with pytest.raises(ValidationError):
            Episode(summary="   ", task_type="bugfix", outcome="success")

    def test_invalid_task_type_rejected(self):
        with pytest.raises(ValidationError):
            Episode(summary="x", task_type="deploy", outcome="success")

    def test_invalid_outcome_rejected(self):
        with pytest.raises(ValidationError):
            Episode(summary="x", task_type="bugfix", outcome="maybe")

    def test_blank_project_is_global(self):
        """Un proyecto vacío equivale a episodio global."""
        episode = Episode(summary="x", task_type="bugfix", outcome="success", project="  ")
        assert episode.project is None

    def test_tags_deduplicated_preserving_order(self):
        episode = Episode(
            summary="x",
            task_type="bugfix",
            outcome="success",
            tags=["sqlite", " locking ", "sqlite", "", "locking"]
        )
        assert episode.tags == ["sqlite", "locking"]

    def test_helpful_count_cannot_exceed_use_count(self):
        with pytest.raises(ValidationError):
            Episode(summary="x", task_type="bugfix", outcome="success", use_count=1, helpful_count=2)

    @pytest.mark.parametrize("utility", [-0.1, 1.01])
    def test_utility_out_of_range_rejected(self, utility):
        with pytest.raises(ValidationError):
            Episode(summary="x", task_type="bugfix", outcome="success", utility=utility)

    def test_is_rated_after_feedback(self):
        episode = Episode(summary="x", task_type="bugfix", outcome="success", feedback_count=1)
        assert episode.is_rated

    def test_embedding_text_includes_tags(self):
        episode = Episode(
            summary="Usar WAL para lecturas concurrentes",
            task_type="refactor",
            outcome="success",
            tags=["sqlite", "concurrency"]
        )
        assert episode.embedding_text() == "Usar WAL para lecturas concurrentes\nTags: sqlite, concurrency"

    def test_embedding_text_without_tags(self):
        episode = Episode(summary="Solo resumen", task_type="docs", outcome="success")
        assert episode.embedding_text() == "Solo resumen"

    def test_errors_resolved_from_dicts(self):
        episode = Episode(
            summary="x",
            task_type="debug",
            outcome="success",
            errors_resolved=[{"error": "database is locked", "resolution": "timeout de busy"}]
        )
        assert episode.errors_resolved == [
            ErrorResolution(error="database is locked", resolution="timeout de busy")
        ]


class TestErrorResolution:

    def test_error_required(self):
        with pytest.raises(ValidationError):
            ErrorResolution(error="", resolution="algo")

    def test_resolution_defaults_empty(self):
        assert ErrorResolution(error="boom").resolution == ""


class TestResults:
    """Tests para los modelos de resultado."""

    def test_feedback_result_skipped(self):
        result = FeedbackResult(helpful=True, updated=["a"], skipped_ids=["b", "c"])
        assert result.skipped == 2

    def test_review_report_duplicate_ids(self):
        report = ReviewReport(
            action=ReviewAction.ANALYZE,
            clusters=[
                DuplicateCluster(representative_id="r1", duplicate_ids=["a", "b"]),
                DuplicateCluster(representative_id="r2", duplicate_ids=["c"]),
            ]
        )
        assert report.duplicate_ids == ["a", "b", "c"]


class TestClampUtility:

    @pytest.mark.parametrize("value,expected", [(-3.0, 0.0), (0.3, 0.3), (7.0, 1.0)])
    def test_clamp(self, value, expected):
        assert clamp_utility(value) == expected
