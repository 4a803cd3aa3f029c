"""Tests for the heuristic full sync and the BigQuery billing export sync."""

import pytest

from greenops_dashboard.tests.conftest import USER_EMAIL, make_connection, make_project


class TestSyncCosts:
    def test_no_active_connection(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        assert sync_costs(USER_EMAIL) is None

    def test_writes_every_table(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        stats = sync_costs(USER_EMAIL)

        assert stats["errors"] == []
        assert stats["apiCallsUsed"] == 4
        for table in ["gcp_connections", "gcp_billing_accounts", "gcp_projects",
                      "gcp_billing_data", "gcp_services_usage", "gcp_monthly_trends",
                      "gcp_optimization_recommendations", "gcp_carbon_footprint",
                      "gcp_cost_anomalies", "gcp_budgets_tracking"]:
            assert table in stats["tablesUpdated"]
        assert fake_db.rows("gcp_audit_log", action="optimized_full_sync")

    def test_projects_split_evenly(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        sync_costs(USER_EMAIL)

        projects = fake_db.rows("gcp_projects", user_id=USER_EMAIL)
        assert len(projects) == 2
        for p in projects:
            assert p["monthly_cost"] == pytest.approx(5.0)
            assert p["cost_percentage"] == pytest.approx(50.0)
            assert p["cost_trend"] == "increasing"

    def test_compute_engine_is_forty_percent_of_total(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        sync_costs(USER_EMAIL)

        usage = {r["service_id"]: r for r in fake_db.rows("gcp_services_usage")}
        assert usage["compute-engine"]["monthly_cost"] == pytest.approx(4.0)
        assert usage["compute-engine"]["cost_percentage"] == pytest.approx(40.0)
        assert usage["cloud-storage"]["potential_savings"] == pytest.approx(0.3)

        billing = fake_db.rows("gcp_billing_data", project_id="alpha", service_id="compute-engine")
        assert billing[0]["cost"] == pytest.approx(2.0)

    def test_open_account_carries_eighty_percent(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        sync_costs(USER_EMAIL)

        account = fake_db.rows("gcp_billing_accounts")[0]
        assert account["monthly_cost"] == pytest.approx(8.0)
        assert account["monthly_carbon"] == pytest.approx(0.8)

    def test_repeated_sync_does_not_duplicate_rows(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        sync_costs(USER_EMAIL)
        counts = {t: len(fake_db.store[t]) for t in [
            "gcp_projects", "gcp_billing_accounts", "gcp_billing_data", "gcp_services_usage",
            "gcp_carbon_footprint", "gcp_budgets_tracking", "gcp_monthly_trends",
            "gcp_optimization_recommendations", "gcp_cost_anomalies",
        ]}

        sync_costs(USER_EMAIL)

        for table, n in counts.items():
            assert len(fake_db.store[table]) == n, table

    def test_falls_back_to_stored_account_info(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_fetcher.fetch_initial_data.return_value = {
            "success": False, "data": None, "error": "Cloud Billing API disabled",
        }
        fake_db.store["gcp_connections"].append(make_connection())
        stats = sync_costs(USER_EMAIL)

        assert any("Cloud Billing API disabled" in e for e in stats["errors"])
        assert len(fake_db.rows("gcp_projects")) == 2

    def test_failing_step_is_reported_and_later_steps_run(self, fake_db, fake_fetcher):
        from unittest.mock import patch

        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection())
        with patch("greenops_dashboard.services.recommendations.sync_recommendations",
                   side_effect=RuntimeError("boom")):
            stats = sync_costs(USER_EMAIL)

        assert "gcp_optimization_recommendations: boom" in stats["errors"]
        assert "gcp_budgets_tracking" in stats["tablesUpdated"]
        assert fake_db.rows("gcp_audit_log")[0]["result"] == "partial"

    def test_live_carbon_and_budgets_survive_full_sync(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        fake_fetcher.fetch_carbon_footprint.return_value = {
            "totalMonthlyCarbon": 7.5, "carbonByProject": [],
        }
        fake_fetcher.fetch_budgets.return_value = [{
            "name": "billingAccounts/0000-AAAA-1111/budgets/b1",
            "displayName": "Team budget",
            "amount": {"specifiedAmount": {"units": "100"}},
            "budgetFilter": {},
            "thresholdRules": [],
        }]

        stats = sync_costs(USER_EMAIL)

        assert stats["errors"] == []
        fake_fetcher.fetch_carbon_footprint.assert_called_once_with("billingAccounts/0000-AAAA-1111")
        connection = fake_db.rows("gcp_connections")[0]
        assert connection["total_monthly_carbon"] == pytest.approx(7.5)
        assert fake_db.rows("gcp_budgets_tracking",
                            budget_name="billingAccounts/0000-AAAA-1111/budgets/b1")


class TestMonthlyTrend:
    def test_change_against_previous_month(self, fake_db):
        from greenops_dashboard.services.costs import record_monthly_trend

        fake_db.store["gcp_monthly_trends"].append({
            "user_id": USER_EMAIL, "trend_month": "2000-01",
            "total_cost": 8.0, "total_carbon": 0.8,
        })
        trend = record_monthly_trend(USER_EMAIL, 10.0, 1.0)

        assert trend["cost_change_percentage"] == pytest.approx(25.0)
        assert trend["carbon_change_percentage"] == pytest.approx(25.0)

    def test_first_month_has_no_change(self, fake_db):
        from greenops_dashboard.services.costs import record_monthly_trend

        trend = record_monthly_trend(USER_EMAIL, 10.0, 1.0)
        assert trend["cost_change_percentage"] == 0.0

    def test_same_month_upserts(self, fake_db):
        from greenops_dashboard.services.costs import record_monthly_trend

        record_monthly_trend(USER_EMAIL, 10.0, 1.0)
        record_monthly_trend(USER_EMAIL, 12.0, 1.2)

        rows = fake_db.rows("gcp_monthly_trends")
        assert len(rows) == 1
        assert rows[0]["total_cost"] == pytest.approx(12.0)


class TestSyncBigQueryCosts:
    def _report(self):
        return {
            "totalMonthlyCost": 12.0,
            "currency": "EUR",
            "costsByProject": [
                {"projectId": "alpha", "projectName": "Alpha", "totalCost": 9.0},
                {"projectId": "beta", "projectName": "Beta", "totalCost": 3.0},
            ],
            "costsByService": [
                {"serviceId": "compute-engine", "serviceName": "Compute Engine",
                 "totalCost": 12.0, "projectsCount": 2},
            ],
            "datasetsAnalyzed": [{"datasetId": "billing"}],
            "tablesFound": [{"dataset": "billing", "table": "gcp_billing_export_v1_X"}],
            "processingTimeMs": 12,
        }

    def test_updates_projects_and_connection(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_bigquery_costs

        fake_db.store["gcp_connections"].append(make_connection())
        fake_db.store["gcp_projects"].extend([make_project("alpha"), make_project("beta")])
        fake_fetcher.fetch_billing_export_costs.return_value = self._report()

        result = sync_bigquery_costs(USER_EMAIL)

        assert result["projectsUpdated"] == 2
        alpha = fake_db.rows("gcp_projects", project_id="alpha")[0]
        assert alpha["monthly_cost"] == pytest.approx(9.0)
        assert alpha["cost_percentage"] == pytest.approx(75.0)
        assert alpha["has_export_bigquery"] is True

        connection = fake_db.rows("gcp_connections")[0]
        assert connection["total_monthly_cost"] == pytest.approx(12.0)
        assert connection["finops_sync_status"] == "bigquery_synced"
        assert fake_db.rows("gcp_services_usage", service_id="compute-engine")

    def test_empty_export_keeps_previous_total(self, fake_db, fake_fetcher):
        from greenops_dashboard.services.costs import sync_bigquery_costs

        fake_db.store["gcp_connections"].append(make_connection(total_monthly_cost=10.0))
        report = self._report()
        report.update(totalMonthlyCost=0.0, costsByProject=[], costsByService=[])
        fake_fetcher.fetch_billing_export_costs.return_value = report

        sync_bigquery_costs(USER_EMAIL)

        connection = fake_db.rows("gcp_connections")[0]
        assert connection["total_monthly_cost"] == 10.0
        assert connection["finops_sync_status"] == "no_export_data"
