"""Tests for optimization recommendations."""

import pytest

from greenops_dashboard.services.recommendations import (
    generate_recommendations,
    sort_recommendations,
)
from greenops_dashboard.tests.conftest import USER_EMAIL, make_connection, make_project


def _by_id(recs):
    return {r["recommendation_id"]: r for r in recs}


class TestGenerateRecommendations:
    def test_global_recommendation(self):
        main = _by_id(generate_recommendations(10.0, []))["cost-optimization-main"]
        assert main["priority"] == "high"
        assert main["potential_savings"] == pytest.approx(2.0)
        assert main["potential_carbon_reduction"] == pytest.approx(0.2)
        assert main["status"] == "pending"

    def test_service_savings_rates(self):
        recs = _by_id(generate_recommendations(10.0, []))
        assert recs["compute-engine-optimization"]["potential_savings"] == pytest.approx(1.2)
        assert recs["cloud-storage-optimization"]["potential_savings"] == pytest.approx(0.2)
        assert recs["bigquery-optimization"]["potential_savings"] == pytest.approx(0.3)
        assert recs["compute-engine-optimization"]["priority"] == "high"

    def test_small_services_skipped(self):
        # 2.0 total: compute 0.8 (medium priority), storage/bigquery 0.4 (skipped)
        recs = _by_id(generate_recommendations(2.0, []))
        assert recs["compute-engine-optimization"]["priority"] == "medium"
        assert "cloud-storage-optimization" not in recs
        assert "bigquery-optimization" not in recs

    def test_bigquery_analysis_per_exporting_project(self):
        projects = [make_project("alpha", has_export_bigquery=True), make_project("beta")]
        recs = _by_id(generate_recommendations(10.0, projects))
        assert "bigquery-detailed-analysis-alpha" in recs
        assert "bigquery-detailed-analysis-beta" not in recs
        assert recs["bigquery-detailed-analysis-alpha"]["recommendation_type"] == "performance"


def test_sort_by_priority_then_savings():
    recs = [
        {"priority": "low", "potential_savings": 9},
        {"priority": "high", "potential_savings": 1},
        {"priority": "high", "potential_savings": 5},
        {"priority": "medium", "potential_savings": 3},
    ]
    ordered = [(r["priority"], r["potential_savings"]) for r in sort_recommendations(recs)]
    assert ordered == [("high", 5), ("high", 1), ("medium", 3), ("low", 9)]


class TestSyncRecommendations:
    def test_replaces_pending_and_keeps_others(self, fake_db):
        from greenops_dashboard.services.recommendations import sync_recommendations

        fake_db.store["gcp_connections"].append(make_connection())
        fake_db.store["gcp_optimization_recommendations"].extend([
            {"user_id": USER_EMAIL, "recommendation_id": "old", "status": "pending"},
            {"user_id": USER_EMAIL, "recommendation_id": "done", "status": "completed"},
        ])

        result = sync_recommendations(USER_EMAIL)
        sync_recommendations(USER_EMAIL)

        ids = [r["recommendation_id"] for r in fake_db.rows("gcp_optimization_recommendations")]
        assert "old" not in ids
        assert "done" in ids
        assert len(ids) == result["recommendationsStored"] + 1

    def test_actioned_recommendation_keeps_status(self, fake_db):
        from greenops_dashboard.services.recommendations import sync_recommendations

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        fake_db.store["gcp_optimization_recommendations"].extend([
            {"user_id": USER_EMAIL, "recommendation_id": "cost-optimization-main",
             "status": "in_progress"},
            {"user_id": USER_EMAIL, "recommendation_id": "compute-engine-optimization",
             "status": "completed"},
        ])

        result = sync_recommendations(USER_EMAIL)

        statuses = {r["recommendation_id"]: r["status"]
                    for r in fake_db.rows("gcp_optimization_recommendations")}
        assert statuses["cost-optimization-main"] == "in_progress"
        assert statuses["compute-engine-optimization"] == "completed"
        assert statuses["cloud-storage-optimization"] == "pending"
        assert result["recommendationsStored"] == len(statuses) - 2
